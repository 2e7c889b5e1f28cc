from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


class PortDirection(str, Enum):
    IN = "in"
    OUT = "out"


class _NoData:
    """Marker for "no data" and "no default"; never equal to any JSON value."""

    _instance: _NoData | None = None

    def __new__(cls) -> _NoData:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NONE"


NONE = _NoData()


@dataclass(frozen=True, slots=True)
class Message:
    value: Any
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PortSpec:
    default: Any = NONE
    channels: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> PortSpec:
        raw = raw or {}
        channels = raw.get("channels") or []
        if not isinstance(channels, list):
            raise ValueError("port `channels` must be a list")
        return cls(default=raw.get("default", NONE), channels=[str(c) for c in channels])

    def to_dict(self) -> dict[str, Any]:
        output: dict[str, Any] = {}
        if self.default is not NONE:
            output["default"] = self.default
        if self.channels:
            output["channels"] = list(self.channels)
        return output


@dataclass(slots=True)
class JobRecord:
    job_id: int
    queue: str
    worker_class: str
    args: list[Any]
    status: JobStatus
    created_at: str
    created_by: str | None
    parent: int | None
    name: str | None
    ran_at: str | None
    error: str | None
