from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from typing import Any

from .models import Message

PORT_NAME_REGEX = re.compile(r"^(?:[A-Za-z0-9_]+|\*)$")


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def to_epoch(at: float | int | datetime) -> float:
    if isinstance(at, datetime):
        if at.tzinfo is None:
            at = at.replace(tzinfo=UTC)
        return at.timestamp()
    return float(at)


def dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True)


def loads(raw: str | None) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


def encode_message(value: Any, context: dict[str, Any] | None = None) -> str:
    payload: dict[str, Any] = {"data": value}
    if context:
        payload["context"] = context
    return dumps(payload)


def decode_message(raw: str) -> Message:
    payload = json.loads(raw)
    return Message(value=payload.get("data"), context=payload.get("context") or {})


def channel_levels(channel: str) -> list[str]:
    """Return `channel` and each ancestor path, most specific first.

    `/a/b/c` yields `/a/b/c`, `/a/b`, `/a`.
    """
    path = channel.rstrip("/")
    levels: list[str] = []
    while path:
        levels.append(path)
        cut = path.rfind("/")
        if cut <= 0:
            break
        path = path[:cut]
    return levels


def is_valid_port_name(name: str) -> bool:
    return bool(PORT_NAME_REGEX.match(name))
