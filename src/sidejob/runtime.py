from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from .app_logging import log_with_fields
from .channels import ChannelPublisher
from .config import AppConfig, RunnerConfig
from .errors import SideJobError, Unregistered
from .job import Job
from .job_queue import JobQueue
from .registry import WorkerEntry, WorkerFactory, WorkerRegistry
from .store import Store


class Runtime:
    """Entry point tying the store, queue, registry and publisher together."""

    def __init__(
        self,
        store: Store,
        registry: WorkerRegistry | None = None,
        config: RunnerConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.registry = registry or WorkerRegistry()
        self.config = config or RunnerConfig()
        self.logger = logger or logging.getLogger("sidejob")
        self.job_queue = JobQueue(store)
        self.publisher = ChannelPublisher(self)
        self.registry.publish(store)

    @classmethod
    def from_config(cls, config: AppConfig, logger: logging.Logger | None = None) -> Runtime:
        store = Store.from_url(config.redis.url, config.redis.namespace)
        return cls(store, config=config.runner, logger=logger)

    def close(self) -> None:
        self.store.close()

    def register(
        self,
        queue: str,
        name: str,
        factory: WorkerFactory,
        *,
        inports: dict[str, Any] | None = None,
        outports: dict[str, Any] | None = None,
        description: str = "",
    ) -> WorkerEntry:
        entry = self.registry.register(
            queue, name, factory, inports=inports, outports=outports, description=description
        )
        self.store.set_worker_spec(queue, name, entry.spec())
        return entry

    def unregister(self, queue: str, name: str) -> None:
        self.registry.unregister(queue, name)
        self.store.delete_worker_spec(queue, name)

    def queue(
        self,
        queue: str,
        worker_class: str,
        args: list[Any] | None = None,
        *,
        parent: Job | None = None,
        name: str | None = None,
        by: str | None = None,
        inports: dict[str, Any] | None = None,
        outports: dict[str, Any] | None = None,
        at: float | datetime | None = None,
    ) -> Job:
        """Create a job, configure its ports and schedule its first run."""
        spec = self.store.get_worker_spec(queue, worker_class)
        if spec is None:
            raise Unregistered(queue, worker_class)
        if parent is not None:
            parent.require()
            if name is not None and parent.child(name) is not None:
                raise SideJobError(f"job {parent.id} already has a child named {name}")

        job_id = self.store.next_job_id()
        self.store.insert_job(
            job_id,
            queue,
            worker_class,
            list(args or []),
            created_by=by,
            parent=parent.id if parent is not None else None,
            name=name,
        )
        job = Job(self, job_id)
        job.set_inports({**spec.get("inports", {}), **(inports or {})})
        job.set_outports({**spec.get("outports", {}), **(outports or {})})
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_created",
            job_id=job_id,
            queue=queue,
            worker_class=worker_class,
            parent=parent.id if parent is not None else None,
            by=by,
        )
        job.run(at=at)
        return job

    def find(self, job_id: int, context: dict[str, Any] | None = None) -> Job | None:
        if not self.store.job_exists(int(job_id)):
            return None
        return Job(self, int(job_id), context)

    def publish(self, channel: str, message: Any, context: dict[str, Any] | None = None) -> int:
        return self.publisher.publish(channel, message, context)

    def wake(self, job_ids: int | Iterable[int] | None, wake: set[int] | None = None) -> None:
        """Run `job_ids` now, or collect them into `wake` for the caller to run."""
        if job_ids is None:
            return
        job_ids = [job_ids] if isinstance(job_ids, int) else list(job_ids)
        if wake is not None:
            wake.update(job_ids)
            return
        for job_id in job_ids:
            job = self.find(job_id)
            if job is not None:
                job.run()
