"""
Messages exchanged with worker processes, and the framing used on byte streams (the stdio of a cluster worker).

A frame is an 8-byte big-endian length followed by that many bytes of pickle. Local multiprocessing workers skip the
framing, since `Connection.send_bytes` already delimits messages.
"""

import os
import pickle
import selectors
import struct
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from furrpyco.errors import RemoteError
from furrpyco.pa.context import Frame

_header = struct.Struct("!Q")


@dataclass
class Task:
    fn: Callable[[Any], Any]
    arg: Any
    frame: Optional[Frame]


@dataclass
class Outcome:
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None
    trace: str = ""


@dataclass
class Hello:
    host: str
    pid: int
    python: str


@dataclass
class Stop:
    pass


def dumps(message: Any) -> bytes:
    return pickle.dumps(message, protocol=pickle.HIGHEST_PROTOCOL)


def dumps_outcome(outcome: Outcome) -> bytes:
    """Pickles an outcome; if the value or the exception refuses to pickle, the failure to pickle is reported in its
    place, so the caller still gets a (failed) answer."""
    try:
        return dumps(outcome)
    except Exception as e:
        if outcome.ok:
            error = RemoteError(f"unpicklable result: {e}")
        else:
            error = RemoteError(f"unpicklable exception: {outcome.error!r}")
        return dumps(Outcome(ok=False, error=error, trace=outcome.trace))


def loads(payload: bytes) -> Any:
    return pickle.loads(payload)


def write_frame(fd: int, payload: bytes) -> None:
    view = memoryview(_header.pack(len(payload)) + payload)
    while view:
        written = os.write(fd, view)
        view = view[written:]


def read_exact(fd: int, n: int, deadline: Optional[float] = None) -> bytes:
    """Reads exactly `n` bytes. EOFError if the stream ends first, TimeoutError (builtin) once `deadline` (a
    time.monotonic value) passes."""
    chunks: list[bytes] = []
    remaining = n
    selector: Optional[selectors.BaseSelector] = None
    if deadline is not None:
        selector = selectors.DefaultSelector()
        selector.register(fd, selectors.EVENT_READ)
    try:
        while remaining > 0:
            if selector is not None and deadline is not None:
                left = deadline - time.monotonic()
                if left <= 0 or not selector.select(timeout=left):
                    raise TimeoutError(f"no data within deadline ({n - remaining}/{n} bytes read)")
            chunk = os.read(fd, remaining)
            if not chunk:
                raise EOFError(f"stream closed after {n - remaining}/{n} bytes")
            chunks.append(chunk)
            remaining -= len(chunk)
    finally:
        if selector is not None:
            selector.close()
    return b"".join(chunks)


def read_frame(fd: int, deadline: Optional[float] = None) -> bytes:
    (size,) = _header.unpack(read_exact(fd, _header.size, deadline))
    return read_exact(fd, size, deadline)
