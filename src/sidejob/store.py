from __future__ import annotations

from typing import Any, Callable, TypeVar

import redis

from .models import JobRecord, JobStatus, PortDirection
from .utils import dumps, loads, utc_now_iso

T = TypeVar("T")


def _hash_to_job(job_id: int, row: dict[str, str]) -> JobRecord:
    parent = row.get("parent")
    return JobRecord(
        job_id=job_id,
        queue=row["queue"],
        worker_class=row["class"],
        args=loads(row.get("args")) or [],
        status=JobStatus(row["status"]),
        created_at=row["created_at"],
        created_by=row.get("created_by"),
        parent=int(parent) if parent else None,
        name=row.get("name"),
        ran_at=row.get("ran_at"),
        error=row.get("error"),
    )


class Store:
    """Redis-backed storage for jobs, ports, channels and worker specs.

    Every key lives under `<namespace>:`. Job keys are rooted at
    `<namespace>:job:<id>`; the job hash itself holds the worker descriptor,
    status and tree links, with the state map, children index, job log, port
    queues, port defaults and channel lists in sibling keys.
    """

    def __init__(self, client: redis.Redis, namespace: str = "sidejob") -> None:
        self.redis = client
        self.namespace = namespace

    @classmethod
    def from_url(cls, url: str, namespace: str = "sidejob") -> Store:
        return cls(redis.Redis.from_url(url, decode_responses=True), namespace)

    def close(self) -> None:
        self.redis.close()

    def key(self, *parts: object) -> str:
        return ":".join([self.namespace, *(str(part) for part in parts)])

    def job_key(self, job_id: int, *parts: object) -> str:
        return self.key("job", job_id, *parts)

    def port_key(self, job_id: int, direction: PortDirection, name: str) -> str:
        return self.job_key(job_id, direction.value, name)

    def ports_key(self, job_id: int, direction: PortDirection) -> str:
        return self.job_key(job_id, f"{direction.value}ports")

    def port_defaults_key(self, job_id: int, direction: PortDirection) -> str:
        return self.job_key(job_id, f"{direction.value}ports", "default")

    def port_channels_key(self, job_id: int, direction: PortDirection) -> str:
        return self.job_key(job_id, f"{direction.value}ports", "channels")

    def channel_key(self, channel: str) -> str:
        return self.key("channel", channel)

    def pipeline(self, transaction: bool = True) -> redis.client.Pipeline:
        return self.redis.pipeline(transaction=transaction)

    def transaction(self, func: Callable[[redis.client.Pipeline], T], *watches: str) -> T:
        """Run `func` under WATCH on `watches`, retrying when a watched key changes.

        `func` reads in immediate mode, calls `pipe.multi()`, then queues writes.
        It may be invoked more than once and must not have other side effects.
        """
        return self.redis.transaction(func, *watches, value_from_callable=True)

    def next_job_id(self) -> int:
        return int(self.redis.incr(self.key("job_id")))

    def insert_job(
        self,
        job_id: int,
        queue: str,
        worker_class: str,
        args: list[Any],
        *,
        created_by: str | None = None,
        parent: int | None = None,
        name: str | None = None,
    ) -> None:
        fields = {
            "queue": queue,
            "class": worker_class,
            "args": dumps(args),
            "status": JobStatus.COMPLETED.value,
            "created_at": utc_now_iso(),
        }
        if created_by is not None:
            fields["created_by"] = created_by
        if parent is not None:
            fields["parent"] = str(parent)
            fields["name"] = name or str(job_id)
        with self.pipeline() as pipe:
            pipe.hset(self.job_key(job_id), mapping=fields)
            pipe.sadd(self.key("jobs"), job_id)
            if parent is not None:
                pipe.hset(self.job_key(parent, "children"), fields["name"], job_id)
            pipe.execute()

    def get_job(self, job_id: int) -> JobRecord | None:
        row = self.redis.hgetall(self.job_key(job_id))
        if not row:
            return None
        return _hash_to_job(job_id, row)

    def job_exists(self, job_id: int) -> bool:
        return bool(self.redis.exists(self.job_key(job_id)))

    def update_job(
        self,
        job_id: int,
        *,
        status: JobStatus | None = None,
        ran_at: str | None = None,
        error: str | None = None,
        clear_error: bool = False,
    ) -> None:
        updates: dict[str, str] = {}
        if status is not None:
            updates["status"] = status.value
        if ran_at is not None:
            updates["ran_at"] = ran_at
        if error is not None:
            updates["error"] = error
        with self.pipeline() as pipe:
            if updates:
                pipe.hset(self.job_key(job_id), mapping=updates)
            if clear_error and error is None:
                pipe.hdel(self.job_key(job_id), "error")
            pipe.execute()

    def get_status(self, job_id: int) -> JobStatus | None:
        raw = self.redis.hget(self.job_key(job_id), "status")
        return JobStatus(raw) if raw else None

    def list_job_ids(self) -> list[int]:
        return sorted(int(job_id) for job_id in self.redis.smembers(self.key("jobs")))

    def summary_counts(self) -> dict[str, int]:
        output = {status.value: 0 for status in JobStatus}
        job_ids = self.list_job_ids()
        with self.pipeline(transaction=False) as pipe:
            for job_id in job_ids:
                pipe.hget(self.job_key(job_id), "status")
            statuses = pipe.execute() if job_ids else []
        for status in statuses:
            if status:
                output[status] = output.get(status, 0) + 1
        return output

    def log_entry(self, entry: dict[str, Any]) -> str:
        return dumps({**entry, "timestamp": utc_now_iso()})

    def add_log(self, job_id: int, entry: dict[str, Any]) -> None:
        self.redis.rpush(self.job_key(job_id, "log"), self.log_entry(entry))

    def get_logs(self, job_id: int, clear: bool = False) -> list[dict[str, Any]]:
        key = self.job_key(job_id, "log")
        with self.pipeline() as pipe:
            pipe.lrange(key, 0, -1)
            if clear:
                pipe.delete(key)
            rows = pipe.execute()[0]
        return [loads(row) for row in rows]

    def replace_worker_specs(self, queue: str, specs: dict[str, dict[str, Any]]) -> None:
        key = self.key("workers", queue)
        with self.pipeline() as pipe:
            pipe.delete(key)
            if specs:
                pipe.hset(key, mapping={name: dumps(spec) for name, spec in specs.items()})
            pipe.execute()

    def set_worker_spec(self, queue: str, worker_class: str, spec: dict[str, Any]) -> None:
        self.redis.hset(self.key("workers", queue), worker_class, dumps(spec))

    def delete_worker_spec(self, queue: str, worker_class: str) -> None:
        self.redis.hdel(self.key("workers", queue), worker_class)

    def get_worker_spec(self, queue: str, worker_class: str) -> dict[str, Any] | None:
        return loads(self.redis.hget(self.key("workers", queue), worker_class))
