from __future__ import annotations

import json
from typing import Any

from .parser import parse


def split_component(component: str) -> tuple[str, str]:
    """`"queue/Class"` -> `("queue", "Class")`."""
    queue, sep, worker_class = str(component).partition("/")
    if not sep or not queue or not worker_class:
        raise ValueError(f"Unable to parse {component}: Must be of form queue/ClassName")
    return queue, worker_class


def _endpoints(raw: Any, key: str) -> list[dict[str, str]]:
    items = raw if isinstance(raw, list) else [raw]
    output = []
    for item in items:
        if not isinstance(item, dict) or key not in item or "port" not in item:
            raise ValueError(f"Invalid port reference: {item!r}")
        output.append({"process": str(item[key]), "port": str(item["port"])})
    return output


def from_dsl(document: dict[str, Any]) -> dict[str, Any]:
    """Convert compiler output (`{"jobs": ...}`) into a graph document.

    Job arguments (`key:value` pairs) become a single mapping argument.
    Literal `init` values become literal edges in sorted job and port order.
    """
    processes: dict[str, dict[str, Any]] = {}
    connections: list[dict[str, Any]] = []
    for name, job in sorted(document.get("jobs", {}).items()):
        process: dict[str, Any] = {"component": f"{job['queue']}/{job['class']}"}
        if job.get("args"):
            process["args"] = [dict(job["args"])]
        processes[name] = process

    for name, job in sorted(document.get("jobs", {}).items()):
        for port, targets in sorted((job.get("connections") or {}).items()):
            for target in _endpoints(targets, "job"):
                connections.append({"src": {"process": name, "port": port}, "tgt": target})
        for port, values in sorted((job.get("init") or {}).items()):
            for value in values:
                connections.append({"data": value, "tgt": {"process": name, "port": port}})

    return {
        "processes": processes,
        "connections": connections,
        "inports": {name: _endpoints(targets, "job") for name, targets in (document.get("inports") or {}).items()},
        "outports": {name: _endpoints(sources, "job") for name, sources in (document.get("outports") or {}).items()},
    }


def normalize(document: dict[str, Any]) -> dict[str, Any]:
    """Validate a graph document and normalize inports/outports to lists."""
    processes = document.get("processes") or {}
    if not isinstance(processes, dict):
        raise ValueError("graph `processes` must be a mapping")
    output_processes: dict[str, dict[str, Any]] = {}
    for name, process in processes.items():
        if not isinstance(process, dict) or "component" not in process:
            raise ValueError(f"process {name} must have a component")
        split_component(process["component"])
        entry: dict[str, Any] = {"component": process["component"]}
        if process.get("args") is not None:
            args = process["args"]
            entry["args"] = args if isinstance(args, list) else [args]
        if process.get("jobId") is not None:
            entry["jobId"] = int(process["jobId"])
        output_processes[str(name)] = entry

    connections: list[dict[str, Any]] = []
    for connection in document.get("connections") or []:
        target = _endpoints(connection.get("tgt"), "process")[0]
        if "data" in connection:
            connections.append({"data": connection["data"], "tgt": target, "sent": bool(connection.get("sent", False))})
        else:
            source = _endpoints(connection.get("src"), "process")[0]
            connections.append({"src": source, "tgt": target})
        for endpoint in connections[-1].values():
            if isinstance(endpoint, dict) and endpoint["process"] not in output_processes:
                raise ValueError(f"Undefined process {endpoint['process']}")

    ports: dict[str, dict[str, list[dict[str, str]]]] = {}
    for direction in ("inports", "outports"):
        ports[direction] = {}
        for name, refs in (document.get(direction) or {}).items():
            endpoints = _endpoints(refs, "process")
            for endpoint in endpoints:
                if endpoint["process"] not in output_processes:
                    raise ValueError(f"Undefined process {endpoint['process']}")
            ports[direction][str(name)] = endpoints

    return {
        "processes": output_processes,
        "connections": connections,
        "inports": ports["inports"],
        "outports": ports["outports"],
    }


def load_graph(source: str | dict[str, Any]) -> dict[str, Any]:
    """Accept DSL text, JSON text, a compiler document or a graph document."""
    if isinstance(source, str):
        stripped = source.lstrip()
        if stripped.startswith("{"):
            source = json.loads(source)
        else:
            source = parse(source)
    if not isinstance(source, dict):
        raise ValueError("graph must be DSL text or a mapping")
    if "jobs" in source:
        source = from_dsl(source)
    return normalize(source)
