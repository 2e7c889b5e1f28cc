from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any

from .app_logging import log_with_fields
from .errors import NotFound, SideJobError, Unregistered
from .models import NONE, JobRecord, JobStatus, PortDirection, PortSpec
from .port import Port
from .registry import port_specs
from .utils import dumps, loads

if TYPE_CHECKING:
    from .runtime import Runtime
    from .store import Store


class Job:
    """Handle on one stored job.

    The handle is cheap and holds no job data besides the id; every property
    reads through to Redis. `context` travels with messages written through
    this handle's ports.
    """

    def __init__(self, runtime: Runtime, job_id: int, context: dict[str, Any] | None = None) -> None:
        self.runtime = runtime
        self.id = int(job_id)
        self.context = dict(context or {})

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Job) and self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def __repr__(self) -> str:
        return f"Job({self.id})"

    @property
    def store(self) -> Store:
        return self.runtime.store

    def exists(self) -> bool:
        return self.store.job_exists(self.id)

    def require(self) -> None:
        if not self.exists():
            raise NotFound(f"job {self.id} not found")

    def record(self) -> JobRecord:
        record = self.store.get_job(self.id)
        if record is None:
            raise NotFound(f"job {self.id} not found")
        return record

    @property
    def status(self) -> JobStatus:
        status = self.store.get_status(self.id)
        if status is None:
            raise NotFound(f"job {self.id} not found")
        return status

    @status.setter
    def status(self, status: JobStatus) -> None:
        self.require()
        self.store.update_job(self.id, status=JobStatus(status))

    @property
    def error(self) -> str | None:
        return self.record().error

    @property
    def args(self) -> list[Any]:
        return self.record().args

    # tree

    @property
    def parent_id(self) -> int | None:
        raw = self.store.redis.hget(self.store.job_key(self.id), "parent")
        return int(raw) if raw else None

    @property
    def parent(self) -> Job | None:
        parent_id = self.parent_id
        return None if parent_id is None else Job(self.runtime, parent_id, self.context)

    @property
    def name(self) -> str | None:
        return self.store.redis.hget(self.store.job_key(self.id), "name")

    def children(self) -> dict[str, Job]:
        rows = self.store.redis.hgetall(self.store.job_key(self.id, "children"))
        return {name: Job(self.runtime, int(child_id), self.context) for name, child_id in sorted(rows.items())}

    def child(self, name: str) -> Job | None:
        child_id = self.store.redis.hget(self.store.job_key(self.id, "children"), name)
        return None if child_id is None else Job(self.runtime, int(child_id), self.context)

    def ancestors(self) -> list[Job]:
        """Parent first, root last."""
        output: list[Job] = []
        parent = self.parent
        while parent is not None:
            output.append(parent)
            parent = parent.parent
        return output

    def adopt(self, orphan: Job, name: str | None = None) -> None:
        self.require()
        orphan.require()
        if orphan.parent_id is not None:
            raise SideJobError(f"job {orphan.id} already has a parent")
        if orphan == self or orphan in self.ancestors():
            raise SideJobError(f"job {self.id} cannot adopt its own ancestor {orphan.id}")
        name = name or str(orphan.id)
        if self.child(name) is not None:
            raise SideJobError(f"job {self.id} already has a child named {name}")
        with self.store.pipeline() as pipe:
            pipe.hset(self.store.job_key(orphan.id), mapping={"parent": str(self.id), "name": name})
            pipe.hset(self.store.job_key(self.id, "children"), name, orphan.id)
            pipe.execute()

    def disown(self, name_or_job: str | Job) -> None:
        if isinstance(name_or_job, Job):
            child = name_or_job
            name = child.name
            if child.parent_id != self.id or name is None:
                raise SideJobError(f"job {child.id} is not a child of job {self.id}")
        else:
            name = name_or_job
            child = self.child(name)
            if child is None:
                raise SideJobError(f"job {self.id} has no child named {name}")
        with self.store.pipeline() as pipe:
            pipe.hdel(self.store.job_key(self.id, "children"), name)
            pipe.hdel(self.store.job_key(child.id), "parent", "name")
            pipe.execute()

    def queue(self, queue: str, worker_class: str, args: list[Any] | None = None, **kwargs: Any) -> Job:
        """Create a child job of this one."""
        return self.runtime.queue(queue, worker_class, args, parent=self, **kwargs)

    # state and log

    def get(self, key: str, default: Any = None) -> Any:
        raw = self.store.redis.hget(self.store.job_key(self.id, "state"), key)
        return default if raw is None else loads(raw)

    def set(self, values: dict[str, Any] | None = None, **kwargs: Any) -> None:
        values = {**(values or {}), **kwargs}
        self.require()
        if values:
            self.store.redis.hset(
                self.store.job_key(self.id, "state"),
                mapping={key: dumps(value) for key, value in values.items()},
            )

    def unset(self, *keys: str) -> None:
        if keys:
            self.store.redis.hdel(self.store.job_key(self.id, "state"), *keys)

    def state(self) -> dict[str, Any]:
        rows = self.store.redis.hgetall(self.store.job_key(self.id, "state"))
        return {key: loads(value) for key, value in rows.items()}

    def log(self, entry: dict[str, Any]) -> None:
        self.store.add_log(self.id, entry)

    def logs(self, clear: bool = False) -> list[dict[str, Any]]:
        return self.store.get_logs(self.id, clear=clear)

    # lifecycle

    def run(self, force: bool = False, at: float | datetime | None = None, wait: float | None = None) -> Job:
        record = self.record()
        if record.status in {JobStatus.TERMINATING, JobStatus.TERMINATED} and not force:
            return self

        if self.store.get_worker_spec(record.queue, record.worker_class) is None:
            self.store.update_job(self.id, status=JobStatus.TERMINATED)
            raise Unregistered(record.queue, record.worker_class)

        if wait is not None:
            at = time.time() + wait
        if record.status is not JobStatus.TERMINATING:
            self.store.update_job(self.id, status=JobStatus.QUEUED)
        self.runtime.job_queue.enqueue(self.id, record.queue, at)
        log_with_fields(self.runtime.logger, logging.DEBUG, "job_enqueued", job_id=self.id, queue=record.queue)
        return self

    def terminate(self, recursive: bool = False) -> Job:
        if self.status is not JobStatus.TERMINATED:
            self.status = JobStatus.TERMINATING
            try:
                self.run(force=True)
            except Unregistered as exc:
                log_with_fields(self.runtime.logger, logging.WARNING, "job_unregistered", job_id=self.id, error=str(exc))
        if recursive:
            for child in self.children().values():
                child.terminate(recursive=True)
        return self

    def is_terminated(self) -> bool:
        if self.status is not JobStatus.TERMINATED:
            return False
        return all(child.is_terminated() for child in self.children().values())

    def delete(self) -> bool:
        if not self.is_terminated():
            return False

        for child in self.children().values():
            child.delete()

        record = self.record()
        self.runtime.job_queue.remove(self.id, record.queue)

        subscriptions = {channel for channels in self.port_channels(PortDirection.IN).values() for channel in channels}
        keys = [self.store.job_key(self.id, part) for part in ("state", "children", "log", "lock")]
        keys.extend(self.store.redis.scan_iter(match=self.store.job_key(self.id, "rate", "*")))
        for direction in PortDirection:
            keys.extend(self.store.port_key(self.id, direction, name) for name in self._declared(direction))
            keys.extend(
                [
                    self.store.ports_key(self.id, direction),
                    self.store.port_defaults_key(self.id, direction),
                    self.store.port_channels_key(self.id, direction),
                ]
            )

        with self.store.pipeline() as pipe:
            pipe.delete(self.store.job_key(self.id), *keys)
            pipe.srem(self.store.key("jobs"), self.id)
            for channel in subscriptions:
                pipe.srem(self.store.channel_key(channel), self.id)
            if record.parent is not None and record.name is not None:
                pipe.hdel(self.store.job_key(record.parent, "children"), record.name)
            pipe.execute()

        log_with_fields(self.runtime.logger, logging.INFO, "job_deleted", job_id=self.id)
        return True

    # ports

    def input(self, name: str) -> Port:
        return self._port(PortDirection.IN, name)

    def output(self, name: str) -> Port:
        return self._port(PortDirection.OUT, name)

    def inports(self) -> list[Port]:
        return [Port(self, PortDirection.IN, name) for name in sorted(self._declared(PortDirection.IN)) if name != "*"]

    def outports(self) -> list[Port]:
        return [Port(self, PortDirection.OUT, name) for name in sorted(self._declared(PortDirection.OUT)) if name != "*"]

    def set_inports(self, spec: dict[str, Any]) -> None:
        self._set_ports(PortDirection.IN, spec)

    def set_outports(self, spec: dict[str, Any]) -> None:
        self._set_ports(PortDirection.OUT, spec)

    def port_channels(self, direction: PortDirection) -> dict[str, list[str]]:
        rows = self.store.redis.hgetall(self.store.port_channels_key(self.id, direction))
        return {name: loads(raw) or [] for name, raw in rows.items() if name != "*"}

    def _declared(self, direction: PortDirection) -> set[str]:
        return set(self.store.redis.smembers(self.store.ports_key(self.id, direction)))

    def _port(self, direction: PortDirection, name: str) -> Port:
        self.require()
        declared = self._declared(direction)
        if name in declared:
            return Port(self, direction, name)
        if "*" not in declared:
            raise NotFound(f"job {self.id} has no {direction.value}port {name}")

        port = Port(self, direction, name)
        defaults_key = self.store.port_defaults_key(self.id, direction)
        channels_key = self.store.port_channels_key(self.id, direction)
        template_default = self.store.redis.hget(defaults_key, "*")
        template_channels = loads(self.store.redis.hget(channels_key, "*")) or []
        with self.store.pipeline() as pipe:
            pipe.sadd(self.store.ports_key(self.id, direction), name)
            if template_default is not None:
                pipe.hset(defaults_key, name, template_default)
            pipe.execute()
        if template_channels:
            port.channels = template_channels
        return port

    def _set_ports(self, direction: PortDirection, spec: dict[str, Any]) -> None:
        """Replace the declared ports; queued data on kept ports survives."""
        self.require()
        specs = port_specs(spec)
        current = self._declared(direction)
        subscribed_before = {channel for channels in self.port_channels(direction).values() for channel in channels}

        defaults_key = self.store.port_defaults_key(self.id, direction)
        channels_key = self.store.port_channels_key(self.id, direction)
        with self.store.pipeline() as pipe:
            for name in current - specs.keys():
                if name != "*":
                    pipe.delete(self.store.port_key(self.id, direction, name))
                pipe.hdel(defaults_key, name)
                pipe.hdel(channels_key, name)
            pipe.delete(self.store.ports_key(self.id, direction))
            if specs:
                pipe.sadd(self.store.ports_key(self.id, direction), *specs)
            pipe.execute()

        for name, port_spec in specs.items():
            if name == "*":
                self._set_template(direction, port_spec)
                continue
            port = Port(self, direction, name)
            port.default = port_spec.default
            port.channels = port_spec.channels

        if direction is PortDirection.IN:
            subscribed_after = {channel for channels in self.port_channels(direction).values() for channel in channels}
            for channel in subscribed_before - subscribed_after:
                self.store.redis.srem(self.store.channel_key(channel), self.id)

    def _set_template(self, direction: PortDirection, spec: PortSpec) -> None:
        defaults_key = self.store.port_defaults_key(self.id, direction)
        channels_key = self.store.port_channels_key(self.id, direction)
        with self.store.pipeline() as pipe:
            if spec.default is NONE:
                pipe.hdel(defaults_key, "*")
            else:
                pipe.hset(defaults_key, "*", dumps(spec.default))
            if spec.channels:
                pipe.hset(channels_key, "*", dumps(spec.channels))
            else:
                pipe.hdel(channels_key, "*")
            pipe.execute()
