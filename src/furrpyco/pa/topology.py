"""
Topologies and sessions.

A Topology is an ordered stack of execution strategies, outermost first -- e.g. `[Cluster(...), MultiProcess(...)]`
distributes across machines, then across the cores of each machine. A map call at depth `d` schedules with
`strategy_at_depth(d)`; map calls issued from within its elements land at `d + 1`; past the last level everything
runs Sequential.

A Session holds the topology in use. Topologies are immutable and a session swaps them wholesale under a lock, so a
map call sees either the old or the new one, never a mix. Independent sessions don't share anything, which is what
tests want; the module-level functions operate on a default session for everyone else.

The topology can also come from the environment, in the form of a plan string:
 - levels separated by `/`, outermost first,
 - each level one of `sequential`, `multiprocess[:N]` (N defaults to the cpu count), `cluster:host[,host...]`
   (each host as `[user@]host[:port]`, or `local`),
e.g. `FURRPYCO_TOPOLOGY="cluster:alice@node1,alice@node2/multiprocess:8"`.
"""

import logging
import os
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

from typing_extensions import Self

from furrpyco.errors import ConfigurationError
from furrpyco.pa import cluster, multiprocess
from furrpyco.pa.core import ExecutionStrategy, Sequential

logger = logging.getLogger(__name__)

TOPOLOGY_ENV_VAR = "FURRPYCO_TOPOLOGY"

_fallback = Sequential()


@dataclass(frozen=True)
class Topology:
    strategies: tuple[ExecutionStrategy, ...]
    key: str = field(default_factory=lambda: uuid.uuid4().hex, compare=False)

    def __post_init__(self) -> None:
        strategies = tuple(self.strategies)
        if not strategies:
            raise ConfigurationError("a topology needs at least one strategy")
        for s in strategies:
            if not isinstance(s, ExecutionStrategy):
                raise ConfigurationError(f"{s!r} is not an execution strategy")
        object.__setattr__(self, "strategies", strategies)

    @classmethod
    def of(cls, strategies: Iterable[ExecutionStrategy]) -> "Topology":
        return cls(tuple(strategies))

    @classmethod
    def from_env(cls, var: str = TOPOLOGY_ENV_VAR) -> "Topology":
        plan = os.environ.get(var, "").strip()
        if not plan:
            return cls((Sequential(),))
        return cls.of(parse_plan(plan))

    def __len__(self) -> int:
        return len(self.strategies)

    def strategy_at_depth(self, depth: int) -> ExecutionStrategy:
        if depth < 0:
            raise ValueError(f"depth must not be negative, got {depth}")
        if depth < len(self.strategies):
            return self.strategies[depth]
        return _fallback

    def shutdown(self, wait: bool = True) -> None:
        for strategy in self.strategies:
            strategy.shutdown(wait)


def _parse_level(text: str) -> ExecutionStrategy:
    kind, _, arg = text.strip().partition(":")
    kind = kind.strip().lower()
    arg = arg.strip()
    if kind == "sequential" and not arg:
        return Sequential()
    if kind == "multiprocess":
        try:
            parallelism = int(arg) if arg else (os.cpu_count() or 1)
        except ValueError as e:
            raise ConfigurationError(f"bad parallelism in plan level {text!r}") from e
        return multiprocess.MultiProcess(multiprocess.Config(parallelism=parallelism))
    if kind == "cluster":
        hosts = [h for h in arg.split(",") if h.strip()]
        return cluster.Cluster(cluster.Config(endpoints=hosts))
    raise ConfigurationError(f"cannot parse plan level {text!r}")


def parse_plan(plan: str) -> list[ExecutionStrategy]:
    levels = plan.split("/")
    if any(not level.strip() for level in levels):
        raise ConfigurationError(f"empty level in plan {plan!r}")
    return [_parse_level(level) for level in levels]


class Session:
    def __init__(self, strategies: Optional[Sequence[ExecutionStrategy]] = None):
        self._lock = threading.Lock()
        self._topology = Topology.of(strategies) if strategies is not None else Topology((Sequential(),))

    def __repr__(self) -> str:
        return f"Session({list(self._topology.strategies)})"

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    @property
    def topology(self) -> Topology:
        return self._topology

    def set_topology(self, strategies: Iterable[ExecutionStrategy]) -> Topology:
        """Replaces the topology, returning the previous one. Its strategies are not shut down -- they may still be
        shared with the new topology, or have work in flight."""
        topology = strategies if isinstance(strategies, Topology) else Topology.of(strategies)
        with self._lock:
            previous, self._topology = self._topology, topology
        logger.debug(f"topology set to {list(topology.strategies)}")
        return previous

    def strategy_at_depth(self, depth: int) -> ExecutionStrategy:
        return self._topology.strategy_at_depth(depth)

    def parallel_map(self, items: Iterable[Any], f: Any, **kwargs: Any) -> list[Any]:
        from furrpyco.pa.mapping import parallel_map

        return parallel_map(items, f, session=self, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        self._topology.shutdown(wait)


_default_session = Session()


def default_session() -> Session:
    return _default_session


def set_topology(strategies: Iterable[ExecutionStrategy]) -> Topology:
    return _default_session.set_topology(strategies)


def get_topology() -> Topology:
    return _default_session.topology


def strategy_at_depth(depth: int) -> ExecutionStrategy:
    return _default_session.strategy_at_depth(depth)
