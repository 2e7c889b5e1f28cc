from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from .app_logging import log_with_fields
from .models import PortSpec
from .store import Store
from .utils import is_valid_port_name

if TYPE_CHECKING:
    from .job import Job
    from .worker import Worker

logger = logging.getLogger("sidejob")

WorkerFactory = Callable[["Job"], "Worker"]


class DuplicateWorkerError(ValueError):
    def __init__(self, queue: str, name: str) -> None:
        self.queue = queue
        self.name = name
        super().__init__(f"worker already registered: {queue}/{name}")


def port_specs(raw: dict[str, Any] | None) -> dict[str, PortSpec]:
    output: dict[str, PortSpec] = {}
    for name, spec in (raw or {}).items():
        if not is_valid_port_name(name):
            raise ValueError(f"Invalid port name: {name!r}")
        output[name] = spec if isinstance(spec, PortSpec) else PortSpec.from_dict(spec)
    return output


@dataclass(slots=True)
class WorkerEntry:
    queue: str
    name: str
    factory: WorkerFactory
    inports: dict[str, PortSpec] = field(default_factory=dict)
    outports: dict[str, PortSpec] = field(default_factory=dict)
    description: str = ""

    def spec(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "inports": {name: port.to_dict() for name, port in self.inports.items()},
            "outports": {name: port.to_dict() for name, port in self.outports.items()},
        }


class WorkerRegistry:
    """Table of (queue, class name) -> worker factory, built at startup.

    Only the port declarations are shared with other processes: `publish`
    writes them to the store, which is what `Job.run` checks before enqueueing.
    """

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], WorkerEntry] = {}

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
        if (queue, name) in self._entries:
            raise DuplicateWorkerError(queue, name)
        entry = WorkerEntry(
            queue=queue,
            name=name,
            factory=factory,
            inports=port_specs(inports),
            outports=port_specs(outports),
            description=description,
        )
        self._entries[(queue, name)] = entry
        log_with_fields(logger, logging.DEBUG, "worker_registered", queue=queue, worker_class=name)
        return entry

    def unregister(self, queue: str, name: str) -> None:
        self._entries.pop((queue, name), None)

    def get(self, queue: str, name: str) -> WorkerEntry | None:
        return self._entries.get((queue, name))

    def queues(self) -> list[str]:
        return sorted({queue for queue, _ in self._entries})

    def entries(self, queue: str | None = None) -> list[WorkerEntry]:
        return [entry for (q, _), entry in sorted(self._entries.items()) if queue is None or q == queue]

    def publish(self, store: Store) -> None:
        for queue in self.queues():
            store.replace_worker_specs(queue, {entry.name: entry.spec() for entry in self.entries(queue)})
