from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .app_logging import log_with_fields
from .models import PortDirection
from .utils import channel_levels, encode_message

if TYPE_CHECKING:
    from .job import Job
    from .runtime import Runtime


class ChannelPublisher:
    """Hierarchical broadcast from a channel path to subscribed input ports.

    A message on `/a/b/c` reaches every input port subscribed to `/a/b/c`,
    `/a/b` or `/a`. Subscriptions are indexed as `channel:<path>` sets of job
    ids; entries whose job is gone or no longer lists the channel are pruned
    during the walk.
    """

    def __init__(self, runtime: Runtime) -> None:
        self.runtime = runtime

    def publish(self, channel: str, message: Any, context: dict[str, Any] | None = None) -> int:
        store = self.runtime.store
        context = {} if context is None else context
        store.redis.publish(store.channel_key(channel), encode_message(message, context))

        jobs: dict[int, Job | None] = {}
        writes = 0
        for level in channel_levels(channel):
            subscribers_key = store.channel_key(level)
            for raw_id in store.redis.smembers(subscribers_key):
                job_id = int(raw_id)
                if job_id not in jobs:
                    jobs[job_id] = self.runtime.find(job_id)
                job = jobs[job_id]
                if job is None:
                    store.redis.srem(subscribers_key, job_id)
                    continue

                subscribed = False
                for name, channels in job.port_channels(PortDirection.IN).items():
                    if level in channels:
                        subscribed = True
                        job.input(name).write(message, context)
                        writes += 1
                if not subscribed:
                    store.redis.srem(subscribers_key, job_id)

        log_with_fields(self.runtime.logger, logging.DEBUG, "channel_publish", channel=channel, writes=writes)
        return writes
