from __future__ import annotations

import time
from datetime import datetime

from .store import Store
from .utils import dumps, loads, to_epoch


class JobQueue:
    """At-least-once delivery of job ids over Redis lists.

    Immediate deliveries are pushed on `queue:<name>`; delayed ones wait in the
    `schedule` sorted set (score = epoch seconds) until `promote_due` moves them.
    The same job may be enqueued several times; the runner decides on dequeue
    whether a delivery still needs to run.
    """

    def __init__(self, store: Store) -> None:
        self.store = store

    def queue_key(self, queue: str) -> str:
        return self.store.key("queue", queue)

    @property
    def schedule_key(self) -> str:
        return self.store.key("schedule")

    def enqueue(self, job_id: int, queue: str, at: float | datetime | None = None) -> None:
        payload = dumps({"job": job_id, "queue": queue})
        if at is not None and to_epoch(at) > time.time():
            self.store.redis.zadd(self.schedule_key, {payload: to_epoch(at)})
            return
        self.store.redis.rpush(self.queue_key(queue), payload)  # FIFO: push right

    def dequeue(self, queue: str) -> int | None:
        payload = self.store.redis.lpop(self.queue_key(queue))  # FIFO: pop left
        if payload is None:
            return None
        return int(loads(payload)["job"])

    def promote_due(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        due = self.store.redis.zrangebyscore(self.schedule_key, "-inf", now)
        promoted = 0
        for payload in due:
            # only the caller that removes the entry gets to push it
            if self.store.redis.zrem(self.schedule_key, payload):
                self.store.redis.rpush(self.queue_key(loads(payload)["queue"]), payload)
                promoted += 1
        return promoted

    def scheduled_at(self, job_id: int, queue: str) -> float | None:
        return self.store.redis.zscore(self.schedule_key, dumps({"job": job_id, "queue": queue}))

    def size(self, queue: str) -> int:
        return int(self.store.redis.llen(self.queue_key(queue)))

    def scheduled_size(self) -> int:
        return int(self.store.redis.zcard(self.schedule_key))

    def remove(self, job_id: int, queue: str) -> None:
        payload = dumps({"job": job_id, "queue": queue})
        with self.store.pipeline() as pipe:
            pipe.lrem(self.queue_key(queue), 0, payload)
            pipe.zrem(self.schedule_key, payload)
            pipe.execute()
