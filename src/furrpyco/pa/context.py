"""
Nesting frames. A frame says which topology a computation belongs to and at which depth a map call issued from
inside it operates. Strategies run user functions via `call_in_frame`, so nested map calls pick the next level down
without the function having to know where it runs.
"""

from contextvars import ContextVar
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional, TypeVar

if TYPE_CHECKING:
    from furrpyco.pa.topology import Topology

TA = TypeVar("TA")
TB = TypeVar("TB")


@dataclass(frozen=True)
class Frame:
    topology: "Topology"
    depth: int

    def deeper(self) -> "Frame":
        return Frame(self.topology, self.depth + 1)


_current: ContextVar[Optional[Frame]] = ContextVar("furrpyco_frame", default=None)


def current_frame() -> Optional[Frame]:
    return _current.get()


def call_in_frame(f: Callable[[TA], TB], arg: TA, frame: Optional[Frame]) -> TB:
    token = _current.set(frame)
    try:
        return f(arg)
    finally:
        _current.reset(token)
