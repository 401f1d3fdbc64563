"""
This module provides the parallel version of the map family: a function applied to each element of a sequence, each
application being an independent Future, results returned in input order. The primary features are:
 - pluggable execution strategies -- inline (Sequential), a local pool of worker processes (MultiProcess), or worker
   interpreters on remote machines connected over ssh (Cluster),
 - topologies: an ordered stack of strategies consumed by nested map calls. `[Cluster(...), MultiProcess(...)]`
   distributes across machines, and a map call from within an element then distributes across the cores of its
   machine. Nesting deeper than the topology just runs Sequential,
 - collect-all-errors -- we don't want a single crash to bring the whole computation down. A failed map call reports
   every failed index along with the values of the elements which did succeed.

To use, set a topology (on the default session via `set_topology`, or on a Session of your own) and call
`parallel_map(items, f)`. Workers are spun up on first use and kept until the strategy is shut down.

Functions, inputs and outputs must be picklable for the process-based strategies -- functions defined in an
importable module, typically taking a single dataclass argument.
"""

from furrpyco.pa.cluster import Cluster  # noqa: F401
from furrpyco.pa.cluster import Config as ClusterConfig  # noqa: F401
from furrpyco.pa.cluster import Endpoint  # noqa: F401
from furrpyco.pa.core import ExecutionStrategy, Kind, Sequential  # noqa: F401
from furrpyco.pa.future import Future, State, cancel, is_done, resolve, schedule  # noqa: F401
from furrpyco.pa.mapping import (  # noqa: F401
    mapreduce,
    parallel_flatmap,
    parallel_imap,
    parallel_map,
    parallel_map2,
    parallel_pmap,
    parallel_walk,
)
from furrpyco.pa.multiprocess import Config as MPConfig  # noqa: F401
from furrpyco.pa.multiprocess import MultiProcess  # noqa: F401
from furrpyco.pa.topology import Session, Topology, get_topology, set_topology, strategy_at_depth  # noqa: F401
