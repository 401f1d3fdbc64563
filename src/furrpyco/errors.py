"""
Error taxonomy of the parallel layer. Everything derives from FurrpycoError; the ones named after builtins also derive
from the respective builtin, so `except TimeoutError` catches both.

Per-element failures never escape a worker directly -- they are captured into the Future as a ComputationError, and
the map family aggregates those into a single ParallelMapError.
"""

import builtins
from typing import Any, Optional


class FurrpycoError(Exception):
    pass


class ConfigurationError(FurrpycoError, ValueError):
    """Invalid topology or strategy configuration, e.g. an empty strategy list."""


class ConnectionError(FurrpycoError, builtins.ConnectionError):
    """A worker channel (local process or remote connection) could not be established, or was lost."""

    def __init__(self, message: str, endpoint: Optional[str] = None, diagnostics: str = ""):
        super().__init__(message)
        self.endpoint = endpoint
        self.diagnostics = diagnostics

    def __str__(self) -> str:
        base = super().__str__()
        if self.diagnostics:
            return f"{base}\n--- worker stderr ---\n{self.diagnostics}"
        return base

    def __reduce__(self):
        return (ConnectionError, (self.args[0], self.endpoint, self.diagnostics))


class TimeoutError(FurrpycoError, builtins.TimeoutError):
    """A bounded resolve exceeded its deadline. The underlying computation keeps running."""


class WorkerCrashedError(FurrpycoError):
    """The process computing a future died before reporting a result."""


class CancelledError(FurrpycoError):
    """The future was cancelled before it could produce a result."""


class RemoteError(FurrpycoError):
    """Stands in for an exception which could not be pickled back from a worker."""


class UnknownJobError(FurrpycoError, KeyError):
    """A job-progress call named a handle the host never issued, or one already removed."""


class ComputationError(FurrpycoError):
    """The scheduled function failed (or its process did). `error` is the original exception, `trace` the formatted
    traceback from wherever the computation ran."""

    def __init__(self, error: BaseException, index: Optional[int] = None, trace: str = ""):
        super().__init__(error, index)
        self.error = error
        self.index = index
        self.trace = trace

    def at(self, index: int) -> "ComputationError":
        if self.index == index:
            return self
        return ComputationError(self.error, index, self.trace)

    def __str__(self) -> str:
        where = "" if self.index is None else f" at index {self.index}"
        return f"computation failed{where}: {self.error!r}"

    def __reduce__(self):
        return (ComputationError, (self.error, self.index, self.trace))


class ParallelMapError(ComputationError):
    """Raised by the map family once every element has resolved and at least one failed. `failures` maps index to
    the element's ComputationError, `partial` maps index to the value of every element that did succeed."""

    def __init__(self, failures: dict[int, ComputationError], partial: Optional[dict[int, Any]] = None):
        ordered = dict(sorted(failures.items()))
        first = next(iter(ordered.values()))
        super().__init__(first.error, first.index, first.trace)
        self.failures = ordered
        self.partial = partial if partial is not None else {}

    @property
    def indices(self) -> list[int]:
        return list(self.failures)

    def __str__(self) -> str:
        lines = [f"{len(self.failures)} element(s) failed at indices {self.indices}"]
        for i, failure in self.failures.items():
            lines.append(f"  [{i}] {failure.error!r}")
        return "\n".join(lines)

    def __reduce__(self):
        return (ParallelMapError, (self.failures, self.partial))
