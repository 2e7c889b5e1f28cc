from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass(slots=True)
class RedisConfig:
    url: str = "redis://localhost:6379/0"
    namespace: str = "sidejob"


@dataclass(slots=True)
class RunnerConfig:
    queues: list[str] = field(default_factory=lambda: ["default"])
    poll_interval_seconds: float = 1.0
    lock_expiration: int = 86400
    max_runs_per_minute: int = 600


@dataclass(slots=True)
class LogConfig:
    level: str = "INFO"
    path: Path | None = None


@dataclass(slots=True)
class AppConfig:
    redis: RedisConfig = field(default_factory=RedisConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    log: LogConfig = field(default_factory=LogConfig)
    workers: list[str] = field(default_factory=list)


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def load_config(path: str | Path | None = None) -> AppConfig:
    if path is None:
        return AppConfig()

    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    redis_raw = _section(raw, "redis")
    runner_raw = _section(raw, "runner")
    log_raw = _section(raw, "log")
    workers_raw = raw.get("workers", []) or []

    redis_config = RedisConfig(
        url=str(redis_raw.get("url", "redis://localhost:6379/0")),
        namespace=str(redis_raw.get("namespace", "sidejob")),
    )
    if not redis_config.namespace:
        raise ValueError("`redis.namespace` must not be empty")

    queues_raw = runner_raw.get("queues", ["default"])
    if not isinstance(queues_raw, list) or not queues_raw:
        raise ValueError("`runner.queues` must be a non-empty list")

    runner = RunnerConfig(
        queues=[str(queue) for queue in queues_raw],
        poll_interval_seconds=float(runner_raw.get("poll_interval_seconds", 1.0)),
        lock_expiration=int(runner_raw.get("lock_expiration", 86400)),
        max_runs_per_minute=int(runner_raw.get("max_runs_per_minute", 600)),
    )
    if runner.poll_interval_seconds <= 0:
        raise ValueError("`runner.poll_interval_seconds` must be > 0")
    if runner.lock_expiration < 1:
        raise ValueError("`runner.lock_expiration` must be >= 1")
    if runner.max_runs_per_minute < 1:
        raise ValueError("`runner.max_runs_per_minute` must be >= 1")

    log_path = log_raw.get("path")
    if log_path is not None:
        log_path = Path(str(log_path)).expanduser()
        if not log_path.is_absolute():
            log_path = config_path.parent / log_path
    log = LogConfig(level=str(log_raw.get("level", "INFO")).upper(), path=log_path)
    if log.level not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
        raise ValueError("`log.level` must be one of DEBUG, INFO, WARNING, ERROR")

    if not isinstance(workers_raw, list):
        raise ValueError("`workers` must be a list of module names")

    return AppConfig(
        redis=redis_config,
        runner=runner,
        log=log,
        workers=[str(module) for module in workers_raw],
    )


def ensure_local_paths(config: AppConfig) -> None:
    if config.log.path is not None:
        config.log.path.parent.mkdir(parents=True, exist_ok=True)
