"""
The worker side: a loop receiving Task messages, running each inside its nesting frame, and answering with an Outcome.

Two transports feed it:
 - `serve_connection` -- a multiprocessing Connection, used by the MultiProcess strategy,
 - `main` -- framed pickles over stdin/stdout, used by Cluster connections (`python -m furrpyco.pa`).
   The worker greets with a Hello frame once it is up, which is what the connecting side waits for. Anything the
   computations print to stdout is moved to stderr so that it cannot corrupt the protocol stream.

Topologies arriving with tasks are cached by key, so that a nested level (e.g. a process pool per machine) is spun up
once per worker rather than once per task. They are shut down when the loop ends.
"""

import logging
import os
import platform
import socket
import sys
import traceback
from multiprocessing.connection import Connection
from typing import TYPE_CHECKING, Optional

from furrpyco.pa import wire
from furrpyco.pa.context import Frame, call_in_frame

if TYPE_CHECKING:
    from furrpyco.pa.topology import Topology

logger = logging.getLogger(__name__)

_topologies: dict[str, "Topology"] = {}


def _configure_logging() -> None:
    logging.basicConfig(
        level=os.environ.get("FURRPYCO_WORKER_LOG_LEVEL", "WARNING"),
        stream=sys.stderr,
        format=f"[worker {os.getpid()}] %(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _adopt(frame: Optional[Frame]) -> Optional[Frame]:
    if frame is None:
        return None
    known = _topologies.setdefault(frame.topology.key, frame.topology)
    if known is frame.topology:
        return frame
    return Frame(known, frame.depth)


def execute(task: wire.Task) -> wire.Outcome:
    try:
        value = call_in_frame(task.fn, task.arg, _adopt(task.frame))
    except Exception as e:
        return wire.Outcome(ok=False, error=e, trace=traceback.format_exc())
    return wire.Outcome(ok=True, value=value)


def _handle(payload: bytes) -> Optional[bytes]:
    """Returns the encoded reply, or None when asked to stop."""
    try:
        message = wire.loads(payload)
    except Exception as e:
        # typically the function's module is not importable on this side
        logger.debug(f"undecodable task: {e!r}")
        return wire.dumps_outcome(wire.Outcome(ok=False, error=e, trace=traceback.format_exc()))
    if isinstance(message, wire.Stop):
        return None
    return wire.dumps_outcome(execute(message))


def _release() -> None:
    while _topologies:
        key, topology = _topologies.popitem()
        logger.debug(f"shutting down nested topology {key}")
        topology.shutdown()


def serve_connection(conn: Connection) -> None:
    _configure_logging()
    logger.debug("worker started")
    try:
        while True:
            try:
                payload = conn.recv_bytes()
            except EOFError:
                logger.debug("parent went away")
                break
            reply = _handle(payload)
            if reply is None:
                break
            conn.send_bytes(reply)
    finally:
        _release()
        conn.close()


def main() -> None:
    _configure_logging()
    proto_in = sys.stdin.fileno()
    proto_out = os.dup(sys.stdout.fileno())
    os.dup2(sys.stderr.fileno(), sys.stdout.fileno())
    hello = wire.Hello(host=socket.gethostname(), pid=os.getpid(), python=platform.python_version())
    wire.write_frame(proto_out, wire.dumps(hello))
    logger.debug("worker started")
    try:
        while True:
            try:
                payload = wire.read_frame(proto_in)
            except EOFError:
                logger.debug("connection closed")
                break
            reply = _handle(payload)
            if reply is None:
                break
            wire.write_frame(proto_out, reply)
    finally:
        _release()
        os.close(proto_out)
