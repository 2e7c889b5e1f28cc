from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .app_logging import log_with_fields
from .document import load_graph, split_component
from .errors import WorkerFault
from .job import Job
from .models import JobStatus
from .port import Port
from .worker import Worker

if TYPE_CHECKING:
    from .runtime import Runtime

GRAPH_CLASS = "Graph"


class Graph(Worker):
    """Runs a network of child jobs described by a graph document.

    The first argument is DSL text, a compiler document or a graph document.
    It is normalized on the first run and kept in the `graph` state key, which
    also records each process's spawned `jobId` and which literal edges were
    sent. Every run moves whatever data is waiting along each edge, wakes the
    jobs that received data, then completes, fails or suspends depending on
    the children's statuses.
    """

    def perform(self, *args: Any) -> None:
        graph = self.get("graph")
        if graph is None:
            if not args:
                self.suspend()
            graph = load_graph(args[0])
            self.set(graph=graph)

        jobs = self._spawn(graph)
        to_run: set[int] = set()

        self._send_literals(graph, jobs, to_run)

        edges: dict[Port, list[Port]] = {}
        for connection in graph["connections"]:
            if "src" not in connection:
                continue
            source = jobs[connection["src"]["process"]].output(connection["src"]["port"])
            target = jobs[connection["tgt"]["process"]].input(connection["tgt"]["port"])
            edges.setdefault(source, []).append(target)
        for name, sources in graph["outports"].items():
            for source in sources:
                port = jobs[source["process"]].output(source["port"])
                edges.setdefault(port, []).append(self.output(name))

        for name, targets in graph["inports"].items():
            internal = [jobs[target["process"]].input(target["port"]) for target in targets]
            self.input(name).connect_to(internal, wake=to_run)

        for source, targets in edges.items():
            source.connect_to(targets, wake=to_run)

        for job_id in sorted(to_run):
            job = self.runtime.find(job_id)
            if job is not None:
                job.run()

        self._settle(jobs)

    def shutdown(self) -> None:
        for child in self.job.children().values():
            child.terminate(recursive=True)

    def _spawn(self, graph: dict[str, Any]) -> dict[str, Job]:
        jobs: dict[str, Job] = {}
        for name, process in graph["processes"].items():
            job_id = process.get("jobId")
            job = self.runtime.find(job_id, self.job.context) if job_id is not None else None
            if job is None:
                job = self.job.child(name)
            if job is None:
                queue, worker_class = split_component(process["component"])
                job = self.queue(queue, worker_class, process.get("args"), name=name)
                process["jobId"] = job.id
                # persisted before any wiring
                self.set(graph=graph)
                log_with_fields(
                    self.runtime.logger,
                    logging.INFO,
                    "graph_spawned",
                    job_id=self.id,
                    process=name,
                    child=job.id,
                )
            elif process.get("jobId") != job.id:
                process["jobId"] = job.id
                self.set(graph=graph)
            jobs[name] = job
        return jobs

    def _send_literals(self, graph: dict[str, Any], jobs: dict[str, Job], to_run: set[int]) -> None:
        pending = [connection for connection in graph["connections"] if "data" in connection and not connection["sent"]]
        if not pending:
            return
        for connection in pending:
            connection["sent"] = True
        self.set(graph=graph)
        for connection in pending:
            target = connection["tgt"]
            jobs[target["process"]].input(target["port"]).write(connection["data"], wake=to_run)

    def _settle(self, jobs: dict[str, Job]) -> None:
        finished = True
        for name, job in jobs.items():
            status = job.status
            if status is JobStatus.FAILED:
                raise WorkerFault(f"{name}: {job.error}")
            if status is not JobStatus.COMPLETED:
                finished = False
        if not finished:
            self.suspend()


def register(runtime: Runtime, queue: str) -> None:
    runtime.register(
        queue,
        GRAPH_CLASS,
        Graph,
        inports={"*": {}},
        outports={"*": {}},
        description="Runs a network of jobs",
    )
