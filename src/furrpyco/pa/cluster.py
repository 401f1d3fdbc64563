"""
Implements the Cluster strategy: one persistent connection per endpoint, each leading to a worker interpreter running
`python -m furrpyco.pa`, exchanging framed pickles over the connection's stdin/stdout.

Connecting to an endpoint means:
 - starting `ssh` in batch mode (no prompts), with the host key policy, connect timeout and identity file from the
   Config, plus any extra ssh options,
 - on the remote side, running the bootstrap script under `set -e` (its stdout goes to stderr) to prepare the
   environment -- library paths, package installation, ...,
 - then `exec`-ing the interpreter into the worker loop, which greets with a Hello frame.
A missing greeting within `connect_timeout_s`, or an exit of the bootstrap/ssh, is a ConnectionError carrying the exit
code and the tail of the remote stderr. `Endpoint.local()` skips ssh and starts the interpreter on this machine, with
our `sys.path` exported as PYTHONPATH -- handy for tests and for a single-machine setup.

Dispatch is least-busy among live connections. A connection that dies, or fails `health_check`, is excluded from
dispatch (its running future fails with WorkerCrashedError, nothing is retried) until `reconnect` is called.

Unlike MultiProcess, connections are established eagerly in the constructor, since an unreachable machine is
something you want to hear about before scheduling anything. A Cluster that arrived in a worker process (pickled
along with a topology) connects on first use instead.
"""

import itertools
import logging
import math
import os
import shlex
import subprocess
import sys
import threading
import time
import traceback
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence, TypeVar, Union

from furrpyco.errors import ConfigurationError, ConnectionError
from furrpyco.pa import wire
from furrpyco.pa.context import Frame
from furrpyco.pa.core import Kind, StrategyBase
from furrpyco.pa.future import Future
from furrpyco.pa.workers import WorkerPool

logger = logging.getLogger(__name__)

_process_exit_grace = 3  # seconds we give a stopped connection to wind down before killing it
_stderr_tail = 200  # lines of remote stderr kept per connection

T = TypeVar("T")
TA = TypeVar("TA")


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: Optional[int] = None
    user: Optional[str] = None
    required: bool = True
    transport: str = "ssh"  # or "local"

    @classmethod
    def local(cls, required: bool = True) -> "Endpoint":
        return cls(host="localhost", required=required, transport="local")

    @classmethod
    def parse(cls, text: str) -> "Endpoint":
        """[user@]host[:port], or `local`."""
        text = text.strip()
        if text == "local":
            return cls.local()
        user, _, hostport = text.rpartition("@")
        host, _, port = hostport.partition(":")
        if not host:
            raise ConfigurationError(f"no host in endpoint {text!r}")
        try:
            return cls(host=host, port=int(port) if port else None, user=user or None)
        except ValueError as e:
            raise ConfigurationError(f"bad port in endpoint {text!r}") from e

    def __str__(self) -> str:
        if self.transport == "local":
            return "local"
        target = f"{self.user}@{self.host}" if self.user else self.host
        return f"{target}:{self.port}" if self.port else target


@dataclass(frozen=True)
class Config:
    endpoints: Sequence[Union[Endpoint, str]]
    user: Optional[str] = None
    identity_file: Optional[str] = None
    host_key_policy: str = "accept-new"
    ssh_options: Sequence[str] = field(default_factory=tuple)
    bootstrap: str = ""
    python: Optional[str] = None  # None: python3 remotely, this interpreter locally
    connect_timeout_s: float = 30
    ssh_command: str = "ssh"

    def __post_init__(self) -> None:
        endpoints = tuple(Endpoint.parse(e) if isinstance(e, str) else e for e in self.endpoints)
        if not endpoints:
            raise ConfigurationError("a cluster needs at least one endpoint")
        if self.connect_timeout_s <= 0:
            raise ConfigurationError(f"connect_timeout_s must be positive, got {self.connect_timeout_s}")
        object.__setattr__(self, "endpoints", endpoints)
        object.__setattr__(self, "ssh_options", tuple(self.ssh_options))


def worker_script(config: Config, python: str) -> str:
    lines = ["set -e"]
    if config.bootstrap.strip():
        lines += ["{", config.bootstrap, "} 1>&2"]
    lines.append(f"exec {shlex.quote(python)} -u -m furrpyco.pa")
    return "\n".join(lines)


def launch_argv(endpoint: Endpoint, config: Config) -> list[str]:
    if endpoint.transport == "local":
        python = config.python or sys.executable
        if not config.bootstrap.strip():
            return [python, "-u", "-m", "furrpyco.pa"]
        return ["sh", "-c", worker_script(config, python)]
    user = endpoint.user or config.user
    target = f"{user}@{endpoint.host}" if user else endpoint.host
    argv = [
        config.ssh_command,
        "-o",
        "BatchMode=yes",
        "-o",
        f"StrictHostKeyChecking={config.host_key_policy}",
        "-o",
        f"ConnectTimeout={max(1, math.ceil(config.connect_timeout_s))}",
    ]
    if config.identity_file:
        argv += ["-i", config.identity_file]
    if endpoint.port:
        argv += ["-p", str(endpoint.port)]
    argv += list(config.ssh_options)
    argv += [target, f"sh -c {shlex.quote(worker_script(config, config.python or 'python3'))}"]
    return argv


class _ShellChannel:
    def __init__(self, endpoint: Endpoint, config: Config):
        self.name = str(endpoint)
        self.endpoint = endpoint
        argv = launch_argv(endpoint, config)
        env = None
        if endpoint.transport == "local":
            env = dict(os.environ)
            env["PYTHONPATH"] = os.pathsep.join(p for p in sys.path if p)
        logger.debug(f"connecting to {self.name}: {shlex.join(argv)}")
        try:
            self._process = subprocess.Popen(
                argv, stdin=subprocess.PIPE, stdout=subprocess.PIPE, stderr=subprocess.PIPE, bufsize=0, env=env
            )
        except OSError as e:
            raise ConnectionError(f"cannot start {argv[0]} for {self.name}: {e}", self.name) from e
        self._stderr: deque[str] = deque(maxlen=_stderr_tail)
        self._drainer = threading.Thread(target=self._drain, name=f"furrpyco-stderr-{self.name}", daemon=True)
        self._drainer.start()
        self.hello = self._handshake(config.connect_timeout_s)

    def _drain(self) -> None:
        assert self._process.stderr is not None
        for line in iter(self._process.stderr.readline, b""):
            self._stderr.append(line.decode(errors="replace").rstrip())

    def _handshake(self, timeout_s: float) -> wire.Hello:
        assert self._process.stdout is not None
        deadline = time.monotonic() + timeout_s
        try:
            greeting = wire.loads(wire.read_frame(self._process.stdout.fileno(), deadline))
        except TimeoutError:
            self.kill()
            raise ConnectionError(
                f"{self.name} did not come up within {timeout_s} seconds", self.name, self.diagnostics()
            ) from None
        except EOFError:
            try:
                code = self._process.wait(_process_exit_grace)
            except subprocess.TimeoutExpired:
                self.kill()
                code = self._process.returncode
            self._drainer.join(_process_exit_grace)
            raise ConnectionError(
                f"{self.name} exited with code {code} while connecting", self.name, self.diagnostics()
            ) from None
        except Exception as e:
            self.kill()
            raise ConnectionError(f"garbled greeting from {self.name}: {e!r}", self.name, self.diagnostics()) from e
        if not isinstance(greeting, wire.Hello):
            self.kill()
            raise ConnectionError(f"unexpected greeting from {self.name}: {greeting!r}", self.name)
        logger.debug(f"connected to {self.name}: host {greeting.host}, pid {greeting.pid}, python {greeting.python}")
        return greeting

    def request(self, payload: bytes) -> bytes:
        assert self._process.stdin is not None and self._process.stdout is not None
        wire.write_frame(self._process.stdin.fileno(), payload)
        return wire.read_frame(self._process.stdout.fileno())

    def alive(self) -> bool:
        return self._process.poll() is None

    def kill(self) -> None:
        if self._process.poll() is None:
            logger.debug(f"killing connection to {self.name}")
            self._process.kill()
        try:
            self._process.wait(_process_exit_grace)
        except subprocess.TimeoutExpired:
            logger.warning(f"connection process of {self.name} did not exit after kill")

    def close(self) -> None:
        assert self._process.stdin is not None
        if self._process.poll() is None:
            try:
                wire.write_frame(self._process.stdin.fileno(), wire.dumps(wire.Stop()))
                self._process.stdin.close()
                self._process.wait(_process_exit_grace)
            except (OSError, subprocess.TimeoutExpired) as e:
                logger.debug(f"{self.name} did not stop cleanly: {e!r}")
                self.kill()
        for stream in (self._process.stdin, self._process.stdout):
            if stream is not None and not stream.closed:
                stream.close()

    def diagnostics(self) -> str:
        return "\n".join(self._stderr)


def _connect_all(config: Config) -> list[Optional[_ShellChannel]]:
    """Connects to every endpoint concurrently, so the whole thing is bounded by a single connect timeout."""

    def attempt(endpoint: Endpoint) -> Union[_ShellChannel, ConnectionError]:
        try:
            return _ShellChannel(endpoint, config)
        except ConnectionError as e:
            return e

    with ThreadPoolExecutor(max_workers=len(config.endpoints)) as tpe:
        attempts = list(tpe.map(attempt, config.endpoints))

    channels: list[Optional[_ShellChannel]] = []
    failure: Optional[ConnectionError] = None
    for endpoint, result in zip(config.endpoints, attempts):
        if isinstance(result, ConnectionError):
            if endpoint.required:
                failure = failure or result
            else:
                logger.warning(f"optional endpoint {endpoint} excluded: {result}")
            channels.append(None)
        else:
            channels.append(result)
    if failure is None and all(c is None for c in channels):
        failure = ConnectionError("none of the cluster endpoints could be reached")
    if failure is not None:
        for channel in channels:
            if channel is not None:
                channel.close()
        raise failure
    return channels


_cluster_ids = itertools.count()


class Cluster(StrategyBase):
    kind = Kind.CLUSTER

    def __init__(self, config: Config, connect: bool = True):
        self.config = config
        self._pool: Optional[WorkerPool] = None
        self._lock = threading.Lock()
        if connect:
            self.connect()

    def __repr__(self) -> str:
        return f"Cluster({', '.join(str(e) for e in self.config.endpoints)})"

    def __getstate__(self) -> dict[str, Any]:
        return {"config": self.config}

    def __setstate__(self, state: dict[str, Any]) -> None:
        self.__init__(state["config"], connect=False)  # type: ignore[misc]

    def connect(self) -> WorkerPool:
        """Establishes the connections unless already done. Idempotent."""
        with self._lock:
            if self._pool is None or self._pool.closed:
                channels: list[Any] = _connect_all(self.config)
                endpoints = self.config.endpoints
                self._pool = WorkerPool(
                    f"cluster-{next(_cluster_ids)}",
                    channels,
                    respawn=lambda i: _ShellChannel(endpoints[i], self.config),
                    respawn_on_crash=False,
                )
            return self._pool

    def reconnect(self, endpoint: Optional[Endpoint] = None) -> None:
        """Re-establishes dead connections (all of them, or just the one to `endpoint`). Raises ConnectionError if
        one still cannot be reached."""
        pool = self.connect()
        for i, (candidate, channel) in enumerate(zip(self.config.endpoints, pool.channels())):
            if channel is None and (endpoint is None or endpoint == candidate):
                logger.debug(f"reconnecting to {candidate}")
                pool.revive(i, _ShellChannel(candidate, self.config))

    def status(self) -> dict[Endpoint, bool]:
        pool = self._pool
        if pool is None:
            return {e: False for e in self.config.endpoints}
        return dict(zip(self.config.endpoints, pool.health_check()))

    def schedule(
        self, f: Callable[[TA], T], arg: TA, index: Optional[int] = None, frame: Optional[Frame] = None
    ) -> Future[T]:
        pool = self.connect()
        future: Future[T] = Future(self, index)
        try:
            payload = wire.dumps(wire.Task(f, arg, frame))
        except Exception as e:
            future._fail(e, traceback.format_exc())
            return future
        pool.submit(future, payload)
        return future

    def cancel(self, future: Future[Any]) -> bool:
        pool = self._pool
        if pool is None:
            return False
        return pool.cancel(future)

    def health_check(self) -> bool:
        return all(self.status().values())

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait)
