"""
Bindings reporting background-job progress to a host IDE (its jobs pane), plus an in-memory host.

The four binding functions are plain remote-procedure calls: they forward to `host.call_fun` under the host's own
function and argument names, and add nothing. What a host does with a handle it does not know is up to the host;
InMemoryJobHost fails loudly with UnknownJobError, both for handles it never issued and for removed jobs.

JobProgress ties a job to the lifecycle of a map call: created before any work starts, one unit per element added as
elements resolve, removed once the call is over (whether it succeeded or not).
"""

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Sequence

from typing_extensions import Self

from furrpyco.errors import UnknownJobError

logger = logging.getLogger(__name__)

JobHandle = str


class JobHost(Protocol):
    def call_fun(self, fn: str, /, **kwargs: Any) -> Any:
        raise NotImplementedError


def add_job(
    host: JobHost,
    name: str,
    status: str = "",
    progress_units: int = 0,
    actions: Optional[Sequence[Any]] = None,
    estimate: int = 0,
    estimate_remaining: int = 0,
    running: bool = False,
    auto_remove: bool = True,
    group: str = "",
) -> JobHandle:
    return host.call_fun(
        "addJob",
        name=name,
        status=status,
        progressUnits=progress_units,
        actions=actions,
        estimate=estimate,
        estimateRemaining=estimate_remaining,
        running=running,
        autoRemove=auto_remove,
        group=group,
    )


def remove_job(host: JobHost, job: JobHandle) -> None:
    host.call_fun("removeJob", job=job)


def add_job_progress(host: JobHost, job: JobHandle, units: int) -> None:
    host.call_fun("addJobProgress", job=job, units=units)


def set_job_progress(host: JobHost, job: JobHandle, units: int) -> None:
    host.call_fun("setJobProgress", job=job, units=units)


@dataclass
class Job:
    name: str
    status: str
    progress_units: int
    actions: Optional[Sequence[Any]]
    estimate: int
    estimate_remaining: int
    running: bool
    auto_remove: bool
    group: str
    progress: int = 0
    removed: bool = False
    history: list[tuple[str, int]] = field(default_factory=list)


class InMemoryJobHost:
    """A host keeping job records in memory, thread-safe. Useful outside of an IDE, and in tests."""

    def __init__(self) -> None:
        self.jobs: dict[JobHandle, Job] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def call_fun(self, fn: str, /, **kwargs: Any) -> Any:
        handler = {
            "addJob": self._add_job,
            "removeJob": self._remove_job,
            "addJobProgress": self._add_job_progress,
            "setJobProgress": self._set_job_progress,
        }.get(fn)
        if handler is None:
            raise ValueError(f"host does not provide {fn!r}")
        with self._lock:
            return handler(**kwargs)

    def _job(self, job: JobHandle) -> Job:
        record = self.jobs.get(job)
        if record is None or record.removed:
            raise UnknownJobError(f"no such job: {job!r}")
        return record

    def _add_job(
        self,
        name: str,
        status: str,
        progressUnits: int,
        actions: Optional[Sequence[Any]],
        estimate: int,
        estimateRemaining: int,
        running: bool,
        autoRemove: bool,
        group: str,
    ) -> JobHandle:
        handle = f"job-{next(self._ids)}"
        self.jobs[handle] = Job(
            name, status, progressUnits, actions, estimate, estimateRemaining, running, autoRemove, group
        )
        logger.debug(f"added {handle} {name!r} with {progressUnits} units")
        return handle

    def _remove_job(self, job: JobHandle) -> None:
        self._job(job).removed = True
        logger.debug(f"removed {job}")

    def _add_job_progress(self, job: JobHandle, units: int) -> None:
        record = self._job(job)
        record.progress += units
        record.history.append(("add", units))

    def _set_job_progress(self, job: JobHandle, units: int) -> None:
        record = self._job(job)
        record.progress = units
        record.history.append(("set", units))


class JobProgress:
    def __init__(self, host: JobHost, name: str, units: int, group: str = ""):
        self.host = host
        self.name = name
        self.units = units
        self.group = group
        self.job: Optional[JobHandle] = None
        self._lock = threading.Lock()

    def __enter__(self) -> Self:
        self.job = add_job(
            self.host, self.name, status="running", progress_units=self.units, running=True, group=self.group
        )
        return self

    def advance(self, units: int = 1) -> None:
        """Called from whichever thread completes a future. A no-op once the job is removed."""
        with self._lock:
            if self.job is not None:
                add_job_progress(self.host, self.job, units)

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        with self._lock:
            job, self.job = self.job, None
        if job is not None:
            remove_job(self.host, job)
