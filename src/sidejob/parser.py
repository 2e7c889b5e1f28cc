from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from .errors import ParseError

NAME = r"[A-Za-z0-9_]+"

DEFINITION = re.compile(rf"\[(?P<job>{NAME})\][ \t]*=[ \t]*(?P<queue>{NAME})[ \t]+(?P<cls>[A-Za-z0-9_:.]+)")
ARGUMENT = re.compile(
    rf"[ \t]+(?P<name>{NAME}):"
    r"(?:'(?P<single>(?:\\.|[^'\\])*)'|\"(?P<double>(?:\\.|[^\"\\])*)\"|(?P<bare>[^\s'\"]\S*))"
)
SOURCE = re.compile(rf"(?:\[(?P<job>{NAME})\]|(?P<self>@)):(?P<port>{NAME})")
LITERAL = re.compile(r"'(?P<value>(?:\\.|[^'\\])*)'")
ARROW = re.compile(r"[ \t]*->[ \t]*")
TARGET = re.compile(rf"(?P<port>{NAME}):(?:\[(?P<job>{NAME})\]|(?P<self>@))")
CONTINUE = re.compile(rf":(?P<port>{NAME})")
SPLIT = re.compile(r"[ \t]*\+[ \t]*")
BARE_ARGUMENT = re.compile(r"[A-Za-z0-9_./:-]+")

ESCAPES = {"n": "\n", "r": "\r", "t": "\t"}


@dataclass(frozen=True, slots=True)
class Endpoint:
    """A job port, a graph port (`job is None`) or a literal (`literal` set)."""

    job: str | None = None
    port: str | None = None
    literal: str | None = None

    @property
    def is_graph(self) -> bool:
        return self.job is None and self.literal is None


@dataclass(frozen=True, slots=True)
class Edge:
    source: Endpoint
    target: Endpoint
    line: int
    text: str


def _unescape(raw: str) -> str:
    return re.sub(r"\\(.)", lambda match: ESCAPES.get(match.group(1), match.group(1)), raw, flags=re.S)


def _escape(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def _strip_comment(line: str) -> str:
    quote: str | None = None
    escaped = False
    for index, char in enumerate(line):
        if escaped:
            escaped = False
        elif quote is not None:
            if char == "\\":
                escaped = True
            elif char == quote:
                quote = None
        elif char in "'\"":
            quote = char
        elif char == "#":
            return line[:index]
    return line


def _error(message: str, line: int, text: str, pos: int, rule: str, expected: str | None = None) -> ParseError:
    return ParseError(message, line=line, column=pos + 1, rule=rule, expected=expected, source_line=text)


def _parse_definition(text: str, lineno: int, pos: int) -> tuple[str, dict[str, Any]] | None:
    match = DEFINITION.match(text, pos)
    if match is None:
        return None
    job = match.group("job")
    definition: dict[str, Any] = {"queue": match.group("queue"), "class": match.group("cls")}
    args: dict[str, str] = {}
    pos = match.end()
    while True:
        arg = ARGUMENT.match(text, pos)
        if arg is None:
            break
        key = arg.group("name")
        if key in args:
            raise _error(f"{job}: argument {key} duplicated", lineno, text, arg.start("name"), "argument")
        if arg.group("bare") is not None:
            args[key] = arg.group("bare")
        else:
            args[key] = _unescape(arg.group("single") if arg.group("single") is not None else arg.group("double"))
        pos = arg.end()
    if text[pos:].strip():
        raise _error("unexpected text after job definition", lineno, text, pos, "definition", "key:value argument")
    if args:
        definition["args"] = args
    return job, definition


def _parse_chain(text: str, lineno: int, pos: int) -> list[Edge]:
    literal = LITERAL.match(text, pos)
    if literal is not None:
        source = Endpoint(literal=_unescape(literal.group("value")))
        pos = literal.end()
    else:
        match = SOURCE.match(text, pos)
        if match is None:
            raise _error("expected job definition or connection", lineno, text, pos, "connection", "[Job]:port, @:port or 'literal'")
        source = Endpoint(job=match.group("job"), port=match.group("port"))
        pos = match.end()

    edges: list[Edge] = []
    while True:
        arrow = ARROW.match(text, pos)
        if arrow is None:
            raise _error("expected '->'", lineno, text, pos, "connection", "->")
        pos = arrow.end()
        match = TARGET.match(text, pos)
        if match is None:
            raise _error("expected target port", lineno, text, pos, "connection", "port:[Job] or port:@")
        target = Endpoint(job=match.group("job"), port=match.group("port"))
        edges.append(Edge(source, target, lineno, text))
        pos = match.end()

        follow = CONTINUE.match(text, pos)
        if follow is None:
            break
        if target.is_graph:
            raise _error("cannot continue a chain from a graph outport", lineno, text, pos, "connection")
        source = Endpoint(job=target.job, port=follow.group("port"))
        pos = follow.end()

    # a split fans out the last edge's source
    last_source = edges[-1].source
    while True:
        split = SPLIT.match(text, pos)
        if split is None:
            break
        match = TARGET.match(text, split.end())
        if match is None:
            raise _error("expected target port after '+'", lineno, text, split.end(), "split", "port:[Job] or port:@")
        edges.append(Edge(last_source, Endpoint(job=match.group("job"), port=match.group("port")), lineno, text))
        pos = match.end()

    if text[pos:].strip():
        raise _error("unexpected text after connection", lineno, text, pos, "connection", "'->', ':port' or '+'")
    return edges


def parse(text: str) -> dict[str, Any]:
    """Compile DSL text into `{"jobs": ..., "inports"?: ..., "outports"?: ...}`."""
    jobs: dict[str, dict[str, Any]] = {}
    edges: list[Edge] = []
    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        line = _strip_comment(raw_line)
        pos = len(line) - len(line.lstrip(" \t"))
        if not line.strip():
            continue
        try:
            definition = _parse_definition(line, lineno, pos)
            if definition is not None:
                job, entry = definition
                if job in jobs:
                    raise _error(f"{job}: duplicate definition", lineno, line, pos, "definition")
                jobs[job] = entry
            else:
                edges.extend(_parse_chain(line, lineno, pos))
        except ParseError as exc:
            raise exc.wrap("line", lineno)

    inports: dict[str, list[dict[str, str]]] = {}
    outports: dict[str, list[dict[str, str]]] = {}
    for edge in edges:
        source, target = edge.source, edge.target
        try:
            for endpoint in (source, target):
                if endpoint.job is not None and endpoint.job not in jobs:
                    raise _error(f"Undefined job {endpoint.job}", edge.line, edge.text, 0, "connection")
            if target.is_graph and source.literal is not None:
                raise _error("a literal cannot feed a graph outport", edge.line, edge.text, 0, "connection")
            if target.is_graph and source.is_graph:
                raise _error("a graph inport cannot feed a graph outport", edge.line, edge.text, 0, "connection")
        except ParseError as exc:
            raise exc.wrap("line", edge.line)

        if source.literal is not None:
            jobs[target.job].setdefault("init", {}).setdefault(target.port, []).append(source.literal)
        elif source.is_graph:
            inports.setdefault(source.port, []).append({"job": target.job, "port": target.port})
        elif target.is_graph:
            outports.setdefault(target.port, []).append({"job": source.job, "port": source.port})
        else:
            connections = jobs[source.job].setdefault("connections", {})
            connections.setdefault(source.port, []).append({"job": target.job, "port": target.port})

    document: dict[str, Any] = {"jobs": jobs}
    if inports:
        document["inports"] = inports
    if outports:
        document["outports"] = outports
    return document


def _argument(value: Any) -> str:
    value = str(value)
    if BARE_ARGUMENT.fullmatch(value):
        return value
    return f"'{_escape(value)}'"


def _targets(targets: list[dict[str, str]]) -> str:
    return " + ".join(f"{target['port']}:[{target['job']}]" for target in targets)


def unparse(document: dict[str, Any]) -> str:
    """Render a compiler document back to DSL text in a canonical order."""
    jobs = document.get("jobs") or {}
    lines: list[str] = []
    for name, job in sorted(jobs.items()):
        parts = [f"[{name}] = {job['queue']} {job['class']}"]
        parts.extend(f"{key}:{_argument(value)}" for key, value in sorted((job.get("args") or {}).items()))
        lines.append(" ".join(parts))

    for name, job in sorted(jobs.items()):
        for port, targets in sorted((job.get("connections") or {}).items()):
            if targets:
                lines.append(f"[{name}]:{port} -> {_targets(targets)}")

    for name, targets in sorted((document.get("inports") or {}).items()):
        if targets:
            lines.append(f"@:{name} -> {_targets(targets)}")

    for name, sources in sorted((document.get("outports") or {}).items()):
        for source in sources:
            lines.append(f"[{source['job']}]:{source['port']} -> {name}:@")

    for name, job in sorted(jobs.items()):
        for port, values in sorted((job.get("init") or {}).items()):
            for value in values:
                lines.append(f"'{_escape(str(value))}' -> {port}:[{name}]")

    return "\n".join(lines) + "\n"
