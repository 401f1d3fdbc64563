import builtins

import pytest

from furrpyco.errors import CancelledError, ComputationError, TimeoutError
from furrpyco.pa import Future, Sequential, State, cancel, is_done, resolve, schedule


def boom(x):
    raise ValueError(f"boom {x}")


def test_resolve_is_idempotent():
    runs = []

    def count(x):
        runs.append(x)
        return x * 2

    future = schedule(Sequential(), count, 21)
    assert is_done(future)
    assert [resolve(future) for _ in range(3)] == [42, 42, 42]
    assert runs == [21]


def test_failed_future():
    future = schedule(Sequential(), boom, 1, index=5)
    assert future.state is State.FAILED
    with pytest.raises(ComputationError) as first:
        resolve(future)
    with pytest.raises(ComputationError) as second:
        resolve(future)
    assert first.value is second.value
    assert first.value.index == 5
    assert isinstance(first.value.error, ValueError)
    assert "boom 1" in first.value.trace


def test_transitions_are_monotonic():
    future: Future[int] = Future(Sequential())
    assert future.state is State.PENDING
    assert future._start()
    assert not future._start()
    assert future._succeed(1)
    assert not future._fail(ValueError())
    assert not future._succeed(2)
    assert future.state is State.RESOLVED
    assert resolve(future) == 1


def test_cancel_pending():
    future: Future[int] = Future(Sequential())
    assert cancel(future)
    assert future.state is State.FAILED
    assert isinstance(future.error.error, CancelledError)
    assert not cancel(future)
    # the owner can no longer start it
    assert not future._start()


def test_sequential_cannot_cancel():
    future = schedule(Sequential(), abs, -3)
    assert not cancel(future)
    assert resolve(future) == 3


def test_bounded_resolve():
    future: Future[int] = Future(Sequential())
    with pytest.raises(TimeoutError):
        resolve(future, timeout=0.05)
    with pytest.raises(builtins.TimeoutError):
        resolve(future, timeout=0.05)
    assert future.state is State.PENDING
    future._start()
    future._succeed(3)
    assert resolve(future, timeout=0.05) == 3


def test_done_callbacks():
    seen = []
    future: Future[int] = Future(Sequential())
    future.add_done_callback(lambda f: seen.append(("early", f.state)))
    future._start()
    future._succeed(1)
    future.add_done_callback(lambda f: seen.append(("late", f.state)))
    assert seen == [("early", State.RESOLVED), ("late", State.RESOLVED)]


def test_ids_are_unique():
    futures = [Future(Sequential()) for _ in range(10)]
    assert len({f.id for f in futures}) == 10
