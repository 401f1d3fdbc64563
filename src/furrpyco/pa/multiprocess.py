"""
Implements the MultiProcess strategy: a fixed number of long-lived local worker processes, each fed one task at a time
over its own Pipe. Excess tasks queue up and go to whichever process frees up first.

Features:
 - you can control the size of the pool (and thus the parallelism),
 - processes start on the first schedule and are reused by all later calls, until `shutdown`,
 - a crash of a process (segfault, os._exit, OOM kill, ...) fails only the future it was computing, with the exit code
   in the error, and the process is replaced by a fresh one. There are no retries,
 - cancelling a running future kills its process (which then gets replaced),
 - worker processes are not daemonic, so a nested MultiProcess level may start its own pool inside them.

Functions, arguments and results cross the process boundary pickled. With the default forkserver context this means
the function must live in an importable module -- lambdas and closures won't do.

To use, instantiate MultiProcess with a Config and put it into a topology (or schedule onto it directly).
"""

import itertools
import logging
import threading
import traceback
from dataclasses import dataclass
from multiprocessing import get_context
from multiprocessing.context import BaseContext
from typing import Any, Callable, Optional, TypeVar

from furrpyco.errors import ConfigurationError
from furrpyco.pa import wire, worker
from furrpyco.pa.context import Frame
from furrpyco.pa.core import Kind, StrategyBase
from furrpyco.pa.future import Future
from furrpyco.pa.workers import WorkerPool

logger = logging.getLogger(__name__)

_process_join_grace = 3  # number of seconds we wait for a stopped process to exit before killing it

T = TypeVar("T")
TA = TypeVar("TA")


@dataclass(frozen=True)
class Config:
    parallelism: int

    mp_context: str = "forkserver"

    def __post_init__(self) -> None:
        if self.parallelism < 1:
            raise ConfigurationError(f"parallelism must be positive, got {self.parallelism}")


class _ProcessChannel:
    def __init__(self, ctx: BaseContext, name: str):
        self.name = name
        parent_end, child_end = ctx.Pipe()
        self._conn = parent_end
        self._process = ctx.Process(target=worker.serve_connection, args=(child_end,), name=name)  # type: ignore
        self._process.start()
        # only the child holds its end now, so its death shows up as EOF on ours
        child_end.close()
        logger.debug(f"started {name} with pid {self._process.pid}")

    def request(self, payload: bytes) -> bytes:
        self._conn.send_bytes(payload)
        return self._conn.recv_bytes()

    def alive(self) -> bool:
        return self._process.is_alive()

    def kill(self) -> None:
        if self._process.is_alive():
            logger.debug(f"killing {self.name} with pid {self._process.pid}")
            self._process.kill()
        self._process.join(_process_join_grace)

    def close(self) -> None:
        if self._process.is_alive():
            try:
                self._conn.send_bytes(wire.dumps(wire.Stop()))
            except OSError:
                logger.debug(f"{self.name} stopped listening before shutdown")
            self._process.join(_process_join_grace)
            if self._process.is_alive():
                self._process.kill()
                self._process.join(_process_join_grace)
        self._conn.close()

    def diagnostics(self) -> str:
        return f"process {self._process.pid} exit code {self._process.exitcode}"


_pool_ids = itertools.count()


class MultiProcess(StrategyBase):
    kind = Kind.MULTIPROCESS

    def __init__(self, config: Config):
        self.config = config
        self._pool: Optional[WorkerPool] = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"MultiProcess({self.config})"

    def __getstate__(self) -> dict[str, Any]:
        return {"config": self.config}

    def __setstate__(self, state: dict[str, Any]) -> None:
        self.__init__(state["config"])  # type: ignore[misc]

    def _ensure_pool(self) -> WorkerPool:
        with self._lock:
            if self._pool is None or self._pool.closed:
                ctx = get_context(self.config.mp_context)
                name = f"multiprocess-{next(_pool_ids)}"
                names = itertools.count()

                def spawn(slot: int) -> _ProcessChannel:
                    return _ProcessChannel(ctx, f"{name}-worker-{slot}.{next(names)}")

                channels: list[Any] = [spawn(i) for i in range(self.config.parallelism)]
                self._pool = WorkerPool(name, channels, respawn=spawn, respawn_on_crash=True)
                logger.debug(f"{name}: started {self.config.parallelism} processes ({self.config.mp_context})")
            return self._pool

    def schedule(
        self, f: Callable[[TA], T], arg: TA, index: Optional[int] = None, frame: Optional[Frame] = None
    ) -> Future[T]:
        future: Future[T] = Future(self, index)
        try:
            payload = wire.dumps(wire.Task(f, arg, frame))
        except Exception as e:
            future._fail(e, traceback.format_exc())
            return future
        self._ensure_pool().submit(future, payload)
        return future

    def cancel(self, future: Future[Any]) -> bool:
        pool = self._pool
        if pool is None:
            return False
        return pool.cancel(future)

    def health_check(self) -> bool:
        pool = self._pool
        if pool is None:
            return True
        return all(pool.health_check())

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait)
