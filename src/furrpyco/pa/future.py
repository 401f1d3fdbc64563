"""
Future: a handle to one deferred computation, owned by the strategy which scheduled it.

Lifecycle is monotonic -- PENDING -> RUNNING -> {RESOLVED, FAILED}. The only shortcut is PENDING -> FAILED, taken
when a queued future is cancelled or its payload cannot be shipped to a worker. Once terminal, a future never changes
again; late transitions (e.g. a killed worker reporting after the cancellation already landed) are dropped.

Only the owning strategy moves a future forward (`_start`, `_succeed`, `_fail`). Callers use `resolve`, `is_done`
and `cancel`, either as methods or through the module-level functions of the same name.
"""

import itertools
import logging
import threading
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Generic, Optional, TypeVar

from furrpyco.errors import CancelledError, ComputationError, TimeoutError

if TYPE_CHECKING:
    from furrpyco.pa.context import Frame
    from furrpyco.pa.core import ExecutionStrategy

logger = logging.getLogger(__name__)

T = TypeVar("T")
TA = TypeVar("TA")

_ids = itertools.count()


class State(Enum):
    PENDING = "pending"
    RUNNING = "running"
    RESOLVED = "resolved"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (State.RESOLVED, State.FAILED)


class Future(Generic[T]):
    def __init__(self, owner: "ExecutionStrategy", index: Optional[int] = None):
        self.id = next(_ids)
        self.owner = owner
        self.index = index
        self._state = State.PENDING
        self._value: Optional[T] = None
        self._error: Optional[ComputationError] = None
        self._cancel_requested = False
        self._callbacks: list[Callable[["Future[T]"], None]] = []
        self._cond = threading.Condition()

    def __repr__(self) -> str:
        return f"<Future #{self.id} index={self.index} {self._state.value}>"

    @property
    def state(self) -> State:
        return self._state

    @property
    def error(self) -> Optional[ComputationError]:
        return self._error

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    # *** owner side ***
    def _start(self) -> bool:
        with self._cond:
            if self._state is not State.PENDING:
                return False
            self._state = State.RUNNING
            return True

    def _succeed(self, value: T) -> bool:
        return self._finish(State.RESOLVED, value, None)

    def _fail(self, error: BaseException, trace: str = "") -> bool:
        # a ComputationError raised by the computation itself (e.g. a nested map) stays intact as `.error`
        return self._finish(State.FAILED, None, ComputationError(error, self.index, trace))

    def _finish(self, state: State, value: Optional[T], error: Optional[ComputationError]) -> bool:
        with self._cond:
            if self._state.terminal:
                logger.debug(f"dropping late {state.value} transition of future #{self.id}")
                return False
            self._state = state
            self._value = value
            self._error = error
            callbacks, self._callbacks = self._callbacks, []
            # callbacks complete before any waiter returns, so e.g. progress is in before the map call ends
            for cb in callbacks:
                try:
                    cb(self)
                except Exception:
                    logger.exception(f"done callback of future #{self.id} raised")
            self._cond.notify_all()
        return True

    # *** caller side ***
    def done(self) -> bool:
        return self._state.terminal

    def result(self, timeout: Optional[float] = None) -> T:
        with self._cond:
            if not self._cond.wait_for(lambda: self._state.terminal, timeout=timeout):
                raise TimeoutError(f"future #{self.id} did not finish within {timeout} seconds")
        if self._state is State.FAILED:
            assert self._error is not None
            raise self._error
        return self._value  # type: ignore[return-value]

    def cancel(self) -> bool:
        """Returns True if the cancellation took effect (or was passed on to a running worker)."""
        with self._cond:
            if self._state.terminal:
                return False
            self._cancel_requested = True
            queued = self._state is State.PENDING
        if queued:
            return self._fail(CancelledError(f"future #{self.id} cancelled before it started"))
        return self.owner.cancel(self)

    def add_done_callback(self, fn: Callable[["Future[T]"], None]) -> None:
        with self._cond:
            if not self._state.terminal:
                self._callbacks.append(fn)
                return
        fn(self)


def schedule(
    strategy: "ExecutionStrategy",
    f: Callable[[TA], T],
    arg: TA,
    index: Optional[int] = None,
    frame: Optional["Frame"] = None,
) -> Future[T]:
    return strategy.schedule(f, arg, index=index, frame=frame)


def resolve(future: Future[T], timeout: Optional[float] = None) -> T:
    return future.result(timeout)


def is_done(future: Future[Any]) -> bool:
    return future.done()


def cancel(future: Future[Any]) -> bool:
    return future.cancel()
