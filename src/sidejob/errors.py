from __future__ import annotations

from typing import Any


class SideJobError(Exception):
    pass


class NotFound(SideJobError):
    pass


class Unregistered(SideJobError):
    def __init__(self, queue: str, worker_class: str) -> None:
        self.queue = queue
        self.worker_class = worker_class
        super().__init__(f"worker not registered: {queue}/{worker_class}")


class ParseError(SideJobError):
    """DSL syntax or validation failure.

    `trace` holds one mapping per failed rule, innermost last, each with the
    rule name, the 1-based line and column, what was expected and the offending
    source line.
    """

    def __init__(
        self,
        message: str,
        *,
        line: int | None = None,
        column: int | None = None,
        rule: str | None = None,
        expected: str | None = None,
        source_line: str | None = None,
    ) -> None:
        self.message = message
        self.line = line
        self.column = column
        self.trace: list[dict[str, Any]] = [
            {
                "rule": rule,
                "line": line,
                "column": column,
                "expected": expected,
                "source": source_line,
            }
        ]
        location = f"line {line}" if line is not None else "graph"
        if line is not None and column is not None:
            location = f"line {line}, column {column}"
        super().__init__(f"{location}: {message}")

    def wrap(self, rule: str, line: int | None = None) -> ParseError:
        self.trace.insert(0, {"rule": rule, "line": line, "column": None, "expected": None, "source": None})
        return self


class WorkerFault(SideJobError):
    pass


class Suspension(Exception):
    """Raised by a worker to stop its run and park the job as suspended."""
