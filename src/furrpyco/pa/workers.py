"""
Dispatch of futures onto a fixed set of persistent workers, shared by the MultiProcess and Cluster strategies.

Each worker sits behind a Channel (a live process, local or remote, with a request/response link) and is driven by
exactly one dispatch thread, so a worker never sees two computations at once. Jobs wait in a single queue, and
whichever worker frees up first pulls the next one -- least-busy dispatch without bookkeeping. The caller's thread
only enqueues, it never waits on a worker.

Failure handling:
 - a worker dying mid-job fails that job's future only (WorkerCrashedError, with whatever the channel captured),
   the job is not retried,
 - the dead worker is then either replaced (`respawn_on_crash`, local pools) or retired until `revive` (clusters),
 - a cancelled running future is handled by killing its worker, after which the worker is always replaced,
 - once no worker is left, queued futures fail with ConnectionError and `submit` refuses new work.
"""

import atexit
import logging
import queue
import threading
import weakref
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from furrpyco.errors import CancelledError, ConnectionError, WorkerCrashedError
from furrpyco.pa import wire
from furrpyco.pa.future import Future

logger = logging.getLogger(__name__)


class Channel(Protocol):
    name: str

    def request(self, payload: bytes) -> bytes:
        """Sends one task, blocks for its reply. EOFError/OSError when the worker is gone."""
        raise NotImplementedError

    def alive(self) -> bool:
        raise NotImplementedError

    def kill(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def diagnostics(self) -> str:
        raise NotImplementedError


@dataclass
class _Job:
    future: Future[Any]
    payload: bytes


@dataclass
class _Slot:
    index: int
    channel: Optional[Channel]
    dead: bool = False
    generation: int = 0
    running: Optional[Future[Any]] = None
    thread: Optional[threading.Thread] = None


_pools: "weakref.WeakSet[WorkerPool]" = weakref.WeakSet()


class WorkerPool:
    def __init__(
        self,
        name: str,
        channels: list[Optional[Channel]],
        respawn: Callable[[int], Channel],
        respawn_on_crash: bool,
    ):
        self.name = name
        self._respawn = respawn
        self._respawn_on_crash = respawn_on_crash
        self._queue: "queue.SimpleQueue[Optional[_Job]]" = queue.SimpleQueue()
        self._lock = threading.Lock()
        self._closed = False
        self._slots = [_Slot(i, channel, dead=channel is None) for i, channel in enumerate(channels)]
        for slot in self._slots:
            if not slot.dead:
                self._launch(slot)
        _pools.add(self)

    def __repr__(self) -> str:
        return f"<WorkerPool {self.name} live={self.live}/{len(self._slots)}>"

    @property
    def live(self) -> int:
        return sum(1 for slot in self._slots if not slot.dead)

    @property
    def closed(self) -> bool:
        return self._closed

    def channels(self) -> list[Optional[Channel]]:
        return [None if slot.dead else slot.channel for slot in self._slots]

    def _launch(self, slot: _Slot) -> None:
        slot.thread = threading.Thread(
            target=self._drive,
            args=(slot, slot.generation),
            name=f"furrpyco-{self.name}-{slot.index}",
            daemon=True,
        )
        slot.thread.start()

    def submit(self, future: Future[Any], payload: bytes) -> None:
        with self._lock:
            if self._closed:
                raise ConnectionError(f"{self.name} has been shut down")
            if self.live == 0:
                raise ConnectionError(f"{self.name} has no live workers")
            self._queue.put(_Job(future, payload))

    def _drive(self, slot: _Slot, generation: int) -> None:
        while True:
            job = self._queue.get()
            if job is None:
                break
            if slot.generation != generation:
                # slot was revived with a new dispatcher
                self._queue.put(job)
                return
            with self._lock:
                if not slot.dead and slot.channel is not None and not slot.channel.alive():
                    self._replace_idle(slot)
            channel = slot.channel
            if slot.dead or channel is None:
                logger.debug(f"{self.name}: worker {slot.index} no longer usable, handing job back")
                self._retire(slot, requeue=job)
                return
            with self._lock:
                if not job.future._start():
                    continue  # cancelled while queued
                slot.running = job.future
            try:
                reply = channel.request(job.payload)
            except (EOFError, OSError) as e:
                with self._lock:
                    slot.running = None
                if not self._crashed(slot, job.future, e):
                    return
                continue
            with self._lock:
                slot.running = None
            self._deliver(job.future, reply)
        logger.debug(f"{self.name}: dispatcher {slot.index} exiting")

    def _deliver(self, future: Future[Any], reply: bytes) -> None:
        try:
            outcome: wire.Outcome = wire.loads(reply)
        except Exception as e:
            future._fail(e, "result could not be unpickled by the caller")
            return
        if outcome.ok:
            future._succeed(outcome.value)
        else:
            assert outcome.error is not None
            future._fail(outcome.error, outcome.trace)

    def _crashed(self, slot: _Slot, future: Future[Any], reason: BaseException) -> bool:
        """Fails the future of a worker which went away. Returns whether the slot keeps being served."""
        assert slot.channel is not None
        diagnostics = slot.channel.diagnostics()
        cancelled = future.cancel_requested
        if cancelled:
            future._fail(CancelledError(f"future #{future.id} cancelled while running on {slot.channel.name}"))
        else:
            logger.debug(f"{self.name}: worker {slot.channel.name} crashed: {reason!r}")
            future._fail(WorkerCrashedError(f"worker {slot.channel.name} died while computing: {reason!r}"), diagnostics)
        slot.channel.kill()
        if self._closed or not (cancelled or self._respawn_on_crash):
            self._retire(slot)
            return False
        try:
            slot.channel = self._respawn(slot.index)
        except OSError as e:
            logger.warning(f"{self.name}: could not replace worker {slot.index}: {e}")
            self._retire(slot)
            return False
        return True

    def _replace_idle(self, slot: _Slot) -> None:
        assert slot.channel is not None
        logger.debug(f"{self.name}: worker {slot.channel.name} died while idle: {slot.channel.diagnostics()}")
        slot.channel.kill()
        if self._closed or not self._respawn_on_crash:
            slot.dead = True
            return
        try:
            slot.channel = self._respawn(slot.index)
        except OSError as e:
            logger.warning(f"{self.name}: could not replace worker {slot.index}: {e}")
            slot.dead = True

    def _retire(self, slot: _Slot, requeue: Optional[_Job] = None) -> None:
        with self._lock:
            slot.dead = True
            if requeue is not None:
                self._queue.put(requeue)
            if self.live > 0:
                return
            stranded = []
            while True:
                try:
                    job = self._queue.get_nowait()
                except queue.Empty:
                    break
                if job is not None:
                    stranded.append(job)
        if stranded:
            logger.warning(f"{self.name}: no live workers left, failing {len(stranded)} queued futures")
        for job in stranded:
            job.future._fail(ConnectionError(f"{self.name} has no live workers"))

    def revive(self, index: int, channel: Channel) -> None:
        with self._lock:
            slot = self._slots[index]
            if not slot.dead:
                raise ValueError(f"worker {index} of {self.name} is alive")
            slot.channel = channel
            slot.dead = False
            slot.generation += 1
            self._launch(slot)

    def cancel(self, future: Future[Any]) -> bool:
        with self._lock:
            for slot in self._slots:
                if slot.running is future:
                    channel = slot.channel
                    break
            else:
                return False
        assert channel is not None
        logger.debug(f"{self.name}: killing {channel.name} to cancel future #{future.id}")
        channel.kill()
        return True

    def health_check(self) -> list[bool]:
        """Settles idle workers whose process is gone: replaced where the pool respawns, marked dead otherwise. Busy
        ones are left to their dispatcher. Returns liveness per worker."""
        for slot in self._slots:
            with self._lock:
                if slot.dead or slot.running is not None or slot.channel is None or slot.channel.alive():
                    continue
                logger.warning(f"{self.name}: worker {slot.index} failed health check")
                self._replace_idle(slot)
            if slot.dead:
                self._retire(slot)
        return [not slot.dead for slot in self._slots]

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            threads = [slot.thread for slot in self._slots if slot.thread is not None and slot.thread.is_alive()]
        for _ in threads:
            self._queue.put(None)
        if wait:
            for thread in threads:
                thread.join()
        for slot in self._slots:
            if slot.channel is not None:
                slot.channel.close()
        logger.debug(f"{self.name}: shut down")


@atexit.register
def _shutdown_all() -> None:
    for pool in list(_pools):
        pool.shutdown(wait=False)
