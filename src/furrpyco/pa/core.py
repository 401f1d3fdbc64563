import logging
import traceback
from enum import Enum
from typing import Any, Callable, Optional, Protocol, TypeVar, runtime_checkable

from typing_extensions import Self

from furrpyco.pa.context import Frame, call_in_frame
from furrpyco.pa.future import Future

logger = logging.getLogger(__name__)

T = TypeVar("T")
TA = TypeVar("TA")


class Kind(Enum):
    SEQUENTIAL = "sequential"
    MULTIPROCESS = "multiprocess"
    CLUSTER = "cluster"


@runtime_checkable
class ExecutionStrategy(Protocol):
    """How futures get realized. Implementations own the futures they hand out, and the workers behind them; workers
    are created lazily and live until `shutdown`, so the spin-up cost is paid once per strategy, not once per call.

    Strategies must pickle as their configuration alone, since a topology travels with every task into the workers
    (where nested map calls re-create the lower levels)."""

    kind: Kind

    def schedule(
        self, f: Callable[[TA], T], arg: TA, index: Optional[int] = None, frame: Optional[Frame] = None
    ) -> Future[T]:
        raise NotImplementedError

    def cancel(self, future: Future[Any]) -> bool:
        raise NotImplementedError

    def health_check(self) -> bool:
        raise NotImplementedError

    def shutdown(self, wait: bool = True) -> None:
        raise NotImplementedError


class StrategyBase:
    """Context manager plumbing shared by the concrete strategies."""

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()  # type: ignore[attr-defined]


class Sequential(StrategyBase):
    """Runs the computation right away on the calling thread. The returned future is already terminal."""

    kind = Kind.SEQUENTIAL

    def __repr__(self) -> str:
        return "Sequential()"

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, Sequential)

    def __hash__(self) -> int:
        return hash(Sequential)

    def schedule(
        self, f: Callable[[TA], T], arg: TA, index: Optional[int] = None, frame: Optional[Frame] = None
    ) -> Future[T]:
        future: Future[T] = Future(self, index)
        future._start()
        try:
            value = call_in_frame(f, arg, frame)
        except Exception as e:
            future._fail(e, traceback.format_exc())
        else:
            future._succeed(value)
        return future

    def cancel(self, future: Future[Any]) -> bool:
        # already synchronous, nothing left to abandon
        return False

    def health_check(self) -> bool:
        return True

    def shutdown(self, wait: bool = True) -> None:
        pass
