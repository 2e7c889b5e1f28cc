from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Iterable

from .app_logging import log_with_fields
from .models import NONE, Message, PortDirection
from .utils import decode_message, dumps, encode_message, is_valid_port_name, loads

if TYPE_CHECKING:
    import redis

    from .job import Job
    from .store import Store


class Port:
    """A named, directional, durable mailbox owned by one job.

    Messages are stored oldest first in a Redis list as `{"data", "context"}`
    JSON. Writing to an input port wakes the owning job; writing to an output
    port wakes the owning job's parent.
    """

    def __init__(self, job: Job, direction: PortDirection, name: str) -> None:
        if name == "*" or not is_valid_port_name(name):
            raise ValueError(f"Invalid port name: {name!r}")
        self.job = job
        self.direction = PortDirection(direction)
        self.name = name

    def __eq__(self, other: object) -> bool:
        return (
            isinstance(other, Port)
            and self.job.id == other.job.id
            and self.direction == other.direction
            and self.name == other.name
        )

    def __hash__(self) -> int:
        return hash((self.job.id, self.direction.value, self.name))

    def __repr__(self) -> str:
        return f"Port({self.key})"

    @property
    def store(self) -> Store:
        return self.job.runtime.store

    @property
    def key(self) -> str:
        return self.store.port_key(self.job.id, self.direction, self.name)

    @property
    def defaults_key(self) -> str:
        return self.store.port_defaults_key(self.job.id, self.direction)

    @property
    def channels_key(self) -> str:
        return self.store.port_channels_key(self.job.id, self.direction)

    def size(self) -> int:
        self.job.require()
        return int(self.store.redis.llen(self.key))

    def has_data(self) -> bool:
        return self.size() > 0 or self.default is not NONE

    @property
    def default(self) -> Any:
        self.job.require()
        raw = self.store.redis.hget(self.defaults_key, self.name)
        return NONE if raw is None else loads(raw)

    @default.setter
    def default(self, value: Any) -> None:
        self.job.require()
        if value is NONE:
            self.store.redis.hdel(self.defaults_key, self.name)
        else:
            self.store.redis.hset(self.defaults_key, self.name, dumps(value))

    @property
    def channels(self) -> list[str]:
        self.job.require()
        return loads(self.store.redis.hget(self.channels_key, self.name)) or []

    @channels.setter
    def channels(self, channels: Iterable[str] | None) -> None:
        self.job.require()
        channels = [str(channel) for channel in channels or []]
        previous = self.channels
        with self.store.pipeline() as pipe:
            if channels:
                pipe.hset(self.channels_key, self.name, dumps(channels))
            else:
                pipe.hdel(self.channels_key, self.name)
            if self.direction is PortDirection.IN:
                for channel in channels:
                    pipe.sadd(self.store.channel_key(channel), self.job.id)
            pipe.execute()

        if self.direction is PortDirection.IN:
            still_listed = {
                channel for port_channels in self.job.port_channels(PortDirection.IN).values() for channel in port_channels
            }
            for channel in set(previous) - still_listed:
                self.store.redis.srem(self.store.channel_key(channel), self.job.id)

    def write(self, value: Any, context: dict[str, Any] | None = None, wake: set[int] | None = None) -> None:
        self.job.require()
        context = self.job.context if context is None else context
        with self.store.pipeline() as pipe:
            pipe.rpush(self.key, encode_message(value, context))
            pipe.rpush(self.store.job_key(self.job.id, "log"), self.store.log_entry(self._log_entry("write", value, context)))
            pipe.execute()
        log_with_fields(
            self.job.runtime.logger,
            logging.DEBUG,
            "port_write",
            job_id=self.job.id,
            port=self.name,
            direction=self.direction.value,
            data=value,
        )

        self.job.runtime.wake(self._wake_target(), wake)

        if self.direction is PortDirection.OUT:
            for channel in self.channels:
                self.job.runtime.publish(channel, value, context)

    def read_message(self, context: dict[str, Any] | None = None) -> Message | Any:
        """Pop the oldest message; fall back to the default, then to NONE."""
        self.job.require()
        raw = self.store.redis.lpop(self.key)
        if raw is None:
            default = self.default
            return NONE if default is NONE else Message(value=default)

        message = decode_message(raw)
        context = self.job.context if context is None else context
        self.store.add_log(self.job.id, self._log_entry("read", message.value, context))
        log_with_fields(
            self.job.runtime.logger,
            logging.DEBUG,
            "port_read",
            job_id=self.job.id,
            port=self.name,
            direction=self.direction.value,
            data=message.value,
        )
        return message

    def read(self, context: dict[str, Any] | None = None) -> Any:
        message = self.read_message(context)
        return NONE if message is NONE else message.value

    def drain(self) -> list[Any]:
        values: list[Any] = []
        while self.size() > 0:
            message = self.read_message()
            if message is NONE:
                break
            values.append(message.value)
        return values

    def clear(self) -> None:
        self.job.require()
        self.store.redis.delete(self.key)

    def connect_to(self, targets: Port | Iterable[Port], wake: set[int] | None = None) -> list[Any]:
        """Move every queued message and the default from this port to `targets`.

        Runs as one WATCH/MULTI transaction. A target only counts as changed
        when it receives messages or its default differs from ours (compared
        as decoded JSON); each changed target's job is woken once. A source
        without a default leaves target defaults untouched.
        """
        targets = [targets] if isinstance(targets, Port) else list(targets)
        self.job.require()
        for target in targets:
            target.job.require()

        watches = {self.key, self.defaults_key, *(target.defaults_key for target in targets)}

        def transfer(pipe: redis.client.Pipeline) -> tuple[list[str], list[Port]]:
            raw = pipe.lrange(self.key, 0, -1)
            source_default = pipe.hget(self.defaults_key, self.name)
            current = [pipe.hget(target.defaults_key, target.name) for target in targets]
            pipe.multi()
            if raw:
                pipe.delete(self.key)
            changed: list[Port] = []
            for target, target_default in zip(targets, current):
                copy_default = source_default is not None and (
                    target_default is None or loads(target_default) != loads(source_default)
                )
                if not raw and not copy_default:
                    continue
                if raw:
                    pipe.rpush(target.key, *raw)
                if copy_default:
                    pipe.hset(target.defaults_key, target.name, source_default)
                changed.append(target)
            return raw, changed

        raw, changed = self.store.transaction(transfer, *sorted(watches))
        messages = [decode_message(item) for item in raw]

        if changed:
            log_with_fields(
                self.job.runtime.logger,
                logging.DEBUG,
                "port_connect",
                job_id=self.job.id,
                port=self.name,
                direction=self.direction.value,
                targets=[repr(target) for target in changed],
                count=len(messages),
            )

        to_wake: set[int] = set()
        for target in changed:
            job_id = target._wake_target()
            if job_id is not None:
                to_wake.add(job_id)
        self.job.runtime.wake(to_wake, wake)

        for target in changed:
            if target.direction is PortDirection.OUT:
                for channel in target.channels:
                    for message in messages:
                        self.job.runtime.publish(channel, message.value, message.context)

        return [message.value for message in messages]

    def _wake_target(self) -> int | None:
        if self.direction is PortDirection.IN:
            return self.job.id
        return self.job.parent_id

    def _log_entry(self, kind: str, value: Any, context: dict[str, Any]) -> dict[str, Any]:
        entry: dict[str, Any] = {"type": kind, f"{self.direction.value}port": self.name, "data": value}
        if context:
            entry["context"] = context
        return entry
