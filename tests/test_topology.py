import pickle
from functools import partial

import pytest

from furrpyco.errors import ConfigurationError
from furrpyco.pa import (
    Kind,
    MPConfig,
    MultiProcess,
    Sequential,
    Session,
    Topology,
    get_topology,
    parallel_map,
    set_topology,
    strategy_at_depth,
)
from furrpyco.pa.topology import parse_plan


class Recording(Sequential):
    def __init__(self, label):
        self.label = label
        self.calls = 0

    def __repr__(self):
        return f"Recording({self.label})"

    def schedule(self, f, arg, index=None, frame=None):
        self.calls += 1
        return super().schedule(f, arg, index=index, frame=frame)


def pair(o, i):
    return (o, i)


def outer(o):
    return parallel_map([1, 2, 3, 4], partial(pair, o))


def three_levels(a):
    return parallel_map([1, 2], partial(two_levels, a))


def two_levels(a, b):
    return parallel_map([1, 2], partial(leaf, a, b))


def leaf(a, b, c):
    return a * 100 + b * 10 + c


_nested_expected = [[(1, 1), (1, 2), (1, 3), (1, 4)], [(2, 1), (2, 2), (2, 3), (2, 4)]]


def test_nesting_consumes_levels():
    a, b = Recording("a"), Recording("b")
    session = Session([a, b])
    assert parallel_map([1, 2], outer, session=session) == _nested_expected
    assert a.calls == 2
    assert b.calls == 8


def test_nesting_with_processes_outside():
    with Session([MultiProcess(MPConfig(parallelism=2)), Sequential()]) as session:
        assert parallel_map([1, 2], outer, session=session) == _nested_expected


def test_nesting_with_processes_inside():
    with Session([Sequential(), MultiProcess(MPConfig(parallelism=2))]) as session:
        assert parallel_map([1, 2], outer, session=session) == _nested_expected


def test_nesting_beyond_topology_runs_sequential():
    only = Recording("only")
    session = Session([only])
    assert parallel_map([1, 2], three_levels, session=session) == [
        [[111, 112], [121, 122]],
        [[211, 212], [221, 222]],
    ]
    assert only.calls == 2


def test_explicit_depth():
    a, b = Recording("a"), Recording("b")
    session = Session([a, b])
    assert parallel_map([1, 2, 3], abs, depth=1, session=session) == [1, 2, 3]
    assert (a.calls, b.calls) == (0, 3)


def test_strategy_at_depth():
    a = Recording("a")
    topology = Topology.of([a])
    assert topology.strategy_at_depth(0) is a
    assert topology.strategy_at_depth(1).kind is Kind.SEQUENTIAL
    assert topology.strategy_at_depth(7).kind is Kind.SEQUENTIAL
    with pytest.raises(ValueError):
        topology.strategy_at_depth(-1)


def test_invalid_topologies():
    with pytest.raises(ConfigurationError):
        Topology.of([])
    with pytest.raises(ConfigurationError):
        Session([])
    with pytest.raises(ConfigurationError):
        Topology.of(["not a strategy"])
    with pytest.raises(ConfigurationError):
        MPConfig(parallelism=0)


def test_sessions_are_independent():
    a, b = Recording("a"), Recording("b")
    first, second = Session([a]), Session([b])
    parallel_map([1, 2], abs, session=first)
    parallel_map([1, 2, 3], abs, session=second)
    assert (a.calls, b.calls) == (2, 3)


def test_set_topology_replaces_wholesale():
    a, b = Recording("a"), Recording("b")
    session = Session([a])
    previous = session.set_topology([b])
    assert previous.strategies[0] is a
    assert session.topology.strategies[0] is b
    assert session.topology.key != previous.key
    session.parallel_map([1], abs)
    assert (a.calls, b.calls) == (0, 1)


def test_default_session():
    a = Recording("a")
    previous = set_topology([a])
    try:
        assert get_topology().strategies[0] is a
        assert strategy_at_depth(0) is a
        assert parallel_map([-1, -2], abs) == [1, 2]
        assert a.calls == 2
    finally:
        set_topology(previous)


def test_parse_plan():
    levels = parse_plan(" sequential / multiprocess:3 /multiprocess")
    assert [level.kind for level in levels] == [Kind.SEQUENTIAL, Kind.MULTIPROCESS, Kind.MULTIPROCESS]
    assert levels[1].config.parallelism == 3
    for bad in ["bogus", "multiprocess:x", "sequential//sequential", "", "cluster:", "sequential:2"]:
        with pytest.raises(ConfigurationError):
            parse_plan(bad)


def test_topology_from_env(monkeypatch):
    monkeypatch.delenv("FURRPYCO_TOPOLOGY", raising=False)
    assert [s.kind for s in Topology.from_env().strategies] == [Kind.SEQUENTIAL]
    monkeypatch.setenv("FURRPYCO_TOPOLOGY", "multiprocess:2/sequential")
    assert [s.kind for s in Topology.from_env().strategies] == [Kind.MULTIPROCESS, Kind.SEQUENTIAL]


def test_strategies_pickle_as_configuration():
    strategy = MultiProcess(MPConfig(parallelism=1))
    try:
        assert parallel_map([3], abs, session=Session([strategy])) == [3]
        clone = pickle.loads(pickle.dumps(strategy))
        assert clone.config == strategy.config
        assert clone._pool is None
    finally:
        strategy.shutdown()
