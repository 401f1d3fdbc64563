"""
The parallel map family: the sequential `map` and its relatives, with every element computed as its own Future under
the strategy of the current topology level.

Common behaviour of all members:
 - every element is scheduled before any is resolved, and results come back in input order, whatever the completion
   order,
 - the level is the current nesting depth -- 0 at the top, one deeper for calls issued from within an element --
   unless `depth` says otherwise. The topology comes from the enclosing element when nested, from `session` (or the
   default session) otherwise,
 - element failures are collected rather than failing fast: once everything resolved, a ParallelMapError lists all
   failed indices with their errors, and carries the values of the elements which succeeded in `partial`.
   `mapreduce` instead returns the failures inside its MaybeResult,
 - `timeout_s` bounds the total wait. Its expiry raises TimeoutError and leaves the computations running,
 - `progress` takes a JobHost; the call is then reported as a job with one progress unit per element, added as
   each element resolves, in completion order.
"""

import logging
import time
from dataclasses import dataclass
from itertools import chain
from typing import Any, Callable, Iterable, Optional, Sequence, Type, TypeVar

from furrpyco.ds import Failure, MaybeResult, TMonoid, msum
from furrpyco.errors import ComputationError, ParallelMapError
from furrpyco.jobs import JobHost, JobProgress
from furrpyco.pa.context import Frame, current_frame
from furrpyco.pa.future import Future, schedule
from furrpyco.pa.topology import Session, Topology, default_session

logger = logging.getLogger(__name__)

TA = TypeVar("TA")
TB = TypeVar("TB")


@dataclass(frozen=True)
class _Star:
    """f(*args), as a picklable callable."""

    f: Callable[..., Any]

    def __call__(self, args: Sequence[Any]) -> Any:
        return self.f(*args)


@dataclass(frozen=True)
class _Listed:
    """list(f(x)) -- generators don't cross process boundaries."""

    f: Callable[[Any], Iterable[Any]]

    def __call__(self, x: Any) -> list[Any]:
        return list(self.f(x))


def _locate(session: Optional[Session], depth: Optional[int]) -> tuple[Topology, int]:
    frame = current_frame()
    if frame is not None and (session is None or session.topology is frame.topology):
        topology, current = frame.topology, frame.depth
    else:
        topology, current = (session or default_session()).topology, 0
    return topology, current if depth is None else depth


def _schedule_all(
    items: Sequence[TA], f: Callable[[TA], TB], session: Optional[Session], depth: Optional[int]
) -> list[Future[TB]]:
    topology, depth = _locate(session, depth)
    strategy = topology.strategy_at_depth(depth)
    frame = Frame(topology, depth + 1)
    logger.debug(f"scheduling {len(items)} elements on {strategy!r} at depth {depth}")
    return [schedule(strategy, f, item, index=i, frame=frame) for i, item in enumerate(items)]


def _gather(
    futures: Sequence[Future[TB]], timeout_s: Optional[float]
) -> tuple[dict[int, TB], dict[int, ComputationError]]:
    deadline = None if timeout_s is None else time.monotonic() + timeout_s
    values: dict[int, TB] = {}
    failures: dict[int, ComputationError] = {}
    for i, future in enumerate(futures):
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            values[i] = future.result(remaining)
        except ComputationError as e:
            failures[i] = e.at(i)
    return values, failures


def _run(
    items: Sequence[TA],
    f: Callable[[TA], TB],
    depth: Optional[int],
    session: Optional[Session],
    timeout_s: Optional[float],
    progress: Optional[JobProgress],
) -> list[TB]:
    futures = _schedule_all(items, f, session, depth)
    if progress is not None:
        for future in futures:
            future.add_done_callback(lambda _, job=progress: job.advance())
    values, failures = _gather(futures, timeout_s)
    if failures:
        logger.debug(f"{len(failures)} of {len(futures)} elements failed")
        raise ParallelMapError(failures, values)
    return [values[i] for i in range(len(futures))]


def parallel_map(
    items: Iterable[TA],
    f: Callable[[TA], TB],
    depth: Optional[int] = None,
    *,
    session: Optional[Session] = None,
    timeout_s: Optional[float] = None,
    progress: Optional[JobHost] = None,
    name: Optional[str] = None,
) -> list[TB]:
    items = list(items)
    if progress is None:
        return _run(items, f, depth, session, timeout_s, None)
    with JobProgress(progress, name or getattr(f, "__name__", "parallel_map"), len(items)) as job:
        return _run(items, f, depth, session, timeout_s, job)


def parallel_map2(xs: Iterable[Any], ys: Iterable[Any], f: Callable[[Any, Any], TB], **kwargs: Any) -> list[TB]:
    """f(x, y) over two sequences of equal length."""
    xs, ys = list(xs), list(ys)
    if len(xs) != len(ys):
        raise ValueError(f"sequences differ in length: {len(xs)} vs {len(ys)}")
    return parallel_map(list(zip(xs, ys)), _Star(f), **kwargs)


def parallel_pmap(rows: Iterable[Sequence[Any]], f: Callable[..., TB], **kwargs: Any) -> list[TB]:
    """f(*row) for each row -- the n-ary generalisation of parallel_map2."""
    return parallel_map([tuple(row) for row in rows], _Star(f), **kwargs)


def parallel_imap(items: Iterable[TA], f: Callable[[TA, int], TB], **kwargs: Any) -> list[TB]:
    """f(item, index)."""
    return parallel_map([(item, i) for i, item in enumerate(items)], _Star(f), **kwargs)


def parallel_walk(items: Iterable[TA], f: Callable[[TA], Any], **kwargs: Any) -> list[TA]:
    """Runs f for its side effects, returns the input."""
    items = list(items)
    parallel_map(items, f, **kwargs)
    return items


def parallel_flatmap(items: Iterable[TA], f: Callable[[TA], Iterable[TB]], **kwargs: Any) -> list[TB]:
    """Often one wants to map-and-filter a sequence, which perfectly suits the flatMap."""
    return list(chain.from_iterable(parallel_map(items, _Listed(f), **kwargs)))


def mapreduce(
    f: Callable[[TA], TMonoid],
    s: Iterable[TA],
    t: Type[TMonoid],
    depth: Optional[int] = None,
    *,
    session: Optional[Session] = None,
    timeout_s: Optional[float] = None,
) -> MaybeResult[TMonoid]:
    """Maps, then sums the Monoid results of the elements which succeeded. The failed ones end up in `failure`."""
    items = list(s)
    futures = _schedule_all(items, f, session, depth)
    values, failures = _gather(futures, timeout_s)
    return MaybeResult(
        result=msum((values[i] for i in sorted(values)), t),
        failure=[Failure.of(failures[i], items[i]) for i in sorted(failures)],
    )
