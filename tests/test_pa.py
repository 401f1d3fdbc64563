import builtins
import logging
import os
import time
from dataclasses import dataclass, replace

import pytest
from typing_extensions import Self

from furrpyco.ds import Failure, msum
from furrpyco.errors import CancelledError, ComputationError, ParallelMapError, TimeoutError, WorkerCrashedError
from furrpyco.pa import (
    MPConfig,
    MultiProcess,
    Sequential,
    Session,
    State,
    mapreduce,
    parallel_flatmap,
    parallel_imap,
    parallel_map,
    parallel_map2,
    parallel_pmap,
    parallel_walk,
    resolve,
    schedule,
)


@dataclass
class AMonoid:
    a: int

    def __add__(self, other: Self) -> Self:
        return replace(self, a=self.a + other.a)

    @classmethod
    def empty(cls) -> Self:
        return cls(0)


_error = ValueError("thou shalt not pass more than 9")


def simple_f(a: int):
    if a > 9:
        raise _error
    return AMonoid(a=a * 2)


def square(x: int) -> int:
    return x * x


def fail_on_three(x: int) -> int:
    if x == 3:
        raise KeyError(f"element {x}")
    return x + 100


def nap(seconds: float) -> float:
    time.sleep(seconds)
    return seconds


def die(x: int) -> int:
    if x == 1:
        os._exit(3)
    return x


def add(x: int, y: int) -> int:
    return x + y


def label(item: str, i: int) -> str:
    return f"{i}:{item}"


def upto(n: int) -> range:
    return range(n)


def inner_fails_at_two(_: int) -> list[int]:
    return parallel_map([0, 1, 2], fail_from_two)


def fail_from_two(x: int) -> int:
    if x >= 2:
        raise KeyError(f"inner {x}")
    return x


@pytest.fixture(scope="module")
def mp():
    strategy = MultiProcess(MPConfig(parallelism=2))
    yield strategy
    strategy.shutdown()


@pytest.fixture(params=["sequential", "multiprocess"])
def session(request, mp):
    strategy = Sequential() if request.param == "sequential" else mp
    return Session([strategy])


def test_mapreduce_happy(session):
    logging.basicConfig(level="DEBUG", force=True)

    input_seq = [1, 2, 3]
    expected = msum((simple_f(e) for e in input_seq), AMonoid)

    # succ
    result = mapreduce(simple_f, input_seq, AMonoid, session=session)
    assert result.result == expected
    assert result.failure == []

    # succ + fail
    seq_with_error = [1, 2, 10]
    expected_succ = msum((simple_f(e) for e in seq_with_error[:2]), AMonoid)
    expected_fail = [Failure("failure with args 10", _error, index=2)]

    result = mapreduce(simple_f, seq_with_error, AMonoid, session=session)
    assert result.result == expected_succ
    assert result.failure == expected_fail


def test_parallel_map_preserves_order(session):
    items = list(range(20))
    assert parallel_map(items, square, session=session) == [square(x) for x in items]
    assert parallel_map([], square, session=session) == []


def test_completion_order_does_not_matter(mp):
    # the first element finishes last
    assert parallel_map([0.5, 0.0, 0.1], nap, session=Session([mp])) == [0.5, 0.0, 0.1]


def test_failures_are_collected(session):
    with pytest.raises(ParallelMapError) as info:
        parallel_map([0, 1, 2, 3, 4], fail_on_three, session=session)
    error = info.value
    assert isinstance(error, ComputationError)
    assert error.indices == [3]
    assert isinstance(error.failures[3].error, KeyError)
    assert "KeyError" in error.failures[3].trace
    assert error.partial == {0: 100, 1: 101, 2: 102, 4: 104}


def test_map_family(session):
    assert parallel_map2([1, 2, 3], [10, 20, 30], add, session=session) == [11, 22, 33]
    assert parallel_pmap([(1, 1), (2, 2)], add, session=session) == [2, 4]
    assert parallel_imap(["a", "b"], label, session=session) == ["0:a", "1:b"]
    assert parallel_walk([1, 2], square, session=session) == [1, 2]
    assert parallel_flatmap([0, 1, 2, 3], upto, session=session) == [0, 0, 1, 0, 1, 2]
    with pytest.raises(ValueError):
        parallel_map2([1, 2], [1], add, session=session)


def test_sequential_resolves_inline():
    calls = []

    def record(x):
        calls.append(x)
        return x

    future = schedule(Sequential(), record, 7)
    assert future.state is State.RESOLVED
    assert resolve(future) == 7
    assert resolve(future) == 7
    assert calls == [7]


def test_worker_crash_is_isolated(mp):
    with pytest.raises(ParallelMapError) as info:
        parallel_map([0, 1, 2], die, session=Session([mp]))
    assert info.value.indices == [1]
    assert isinstance(info.value.failures[1].error, WorkerCrashedError)
    assert info.value.partial == {0: 0, 2: 2}
    # the crashed process got replaced
    assert parallel_map([5, 6, 7], square, session=Session([mp])) == [25, 36, 49]
    assert mp.health_check()


def test_unpicklable_function_fails_the_element(mp):
    with pytest.raises(ParallelMapError) as info:
        parallel_map([1, 2], lambda x: x, session=Session([mp]))
    assert info.value.indices == [0, 1]


def test_cancel_running(mp):
    future = schedule(mp, nap, 30)
    deadline = time.monotonic() + 10
    while future.state is State.PENDING and time.monotonic() < deadline:
        time.sleep(0.01)
    assert future.state is State.RUNNING
    assert future.cancel()
    with pytest.raises(ComputationError) as info:
        resolve(future, timeout=10)
    assert isinstance(info.value.error, CancelledError)
    assert not future.cancel()
    assert resolve(schedule(mp, square, 4), timeout=30) == 16


def test_timeout_leaves_work_running(mp):
    started = time.monotonic()
    with pytest.raises(TimeoutError):
        parallel_map([1.0], nap, session=Session([mp]), timeout_s=0.2)
    assert time.monotonic() - started < 1.0
    # builtin TimeoutError catches it as well
    future = schedule(mp, nap, 0.5)
    with pytest.raises(builtins.TimeoutError):
        resolve(future, timeout=0.01)
    assert resolve(future, timeout=30) == 0.5


def test_nested_failures_keep_their_shape():
    session = Session([Sequential(), Sequential()])
    with pytest.raises(ParallelMapError) as info:
        parallel_map([0, 1, 2], inner_fails_at_two, session=session)
    outer = info.value
    assert outer.indices == [0, 1, 2]
    for i, failure in outer.failures.items():
        # every element carries the inner map error whole, whatever its own first failed index
        assert type(failure) is ComputationError
        assert failure.index == i
        assert isinstance(failure.error, ParallelMapError)
        assert failure.error.indices == [2]
        assert failure.error.partial == {0: 0, 1: 1}
