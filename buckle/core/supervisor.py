"""
Process supervisor for the Buckle server.

Start state machine:

    IDLE -> CHECKING_EXISTING -> SPAWNING -> AWAITING_HEALTH -> READY

with an exit to FAILED from any step. The PID record is written only after
the OS has started the child and before health is awaited, so `buckle down`
works even while startup is in progress. Supervisor.session() clears the
record on every exit path of a foreground run.

Known limitation: the liveness check is the only mutual exclusion between two
`buckle up` invocations sharing a state directory; they can race.
"""

import asyncio
import logging
import os
import signal
import subprocess
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

from buckle.config import LaunchConfig
from buckle.core.health import HealthStatus, HealthWaiter
from buckle.core.liveness import process_alive
from buckle.core.state import ProcessRecord, StateStore
from buckle.errors import (
    AlreadyRunningError,
    BuckleError,
    SpawnFailedError,
    StateError,
    StopFailedError,
)

logger = logging.getLogger(__name__)

# How often a running child is polled for exit
EXIT_POLL_INTERVAL = 0.05


class SupervisorState(str, Enum):
    """State of the supervised server."""

    IDLE = "idle"
    CHECKING_EXISTING = "checking_existing"
    SPAWNING = "spawning"
    AWAITING_HEALTH = "awaiting_health"
    READY = "ready"
    FAILED = "failed"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(frozen=True)
class StartOutcome:
    """Result of a successful Supervisor.start()."""

    pid: int
    health: HealthStatus
    url: str

    @property
    def healthy(self) -> bool:
        return self.health == HealthStatus.READY


class Supervisor:
    """
    Starts one server process for one CLI invocation and tracks it.

    Health-timeout policy: a server that does not become healthy in time is
    left running and start() still succeeds, reporting HealthStatus.TIMED_OUT.
    A server that exits while being awaited fails start() with SpawnFailedError.
    """

    def __init__(
        self,
        config: LaunchConfig,
        store: StateStore,
        waiter: HealthWaiter,
        stop_timeout: float = 5.0,
        on_ready: Optional[Callable[[str], None]] = None,
    ):
        self.config = config
        self.store = store
        self.waiter = waiter
        self.stop_timeout = stop_timeout
        self.on_ready = on_ready

        self.state = SupervisorState.IDLE
        self.process: Optional[subprocess.Popen] = None
        self.record: Optional[ProcessRecord] = None
        self.last_error: Optional[BuckleError] = None

    def _set_state(self, state: SupervisorState) -> None:
        logger.debug(f"Supervisor: {self.state.value} -> {state.value}")
        self.state = state

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    # --- Start ---

    async def start(self) -> StartOutcome:
        """Run the start state machine. Raises BuckleError subclasses on failure."""
        if self.state != SupervisorState.IDLE:
            raise RuntimeError(f"Supervisor already used (state: {self.state.value})")

        try:
            self._set_state(SupervisorState.CHECKING_EXISTING)
            self._check_existing()

            self._set_state(SupervisorState.SPAWNING)
            await self._spawn()

            self._set_state(SupervisorState.AWAITING_HEALTH)
            health = await self._await_health()
        except BuckleError as e:
            self.last_error = e
            self._set_state(SupervisorState.FAILED)
            raise

        self._set_state(SupervisorState.READY)
        if health == HealthStatus.READY and self.config.open_browser and self.on_ready:
            self.on_ready(self.config.base_url)

        return StartOutcome(pid=self.process.pid, health=health, url=self.config.base_url)

    def _check_existing(self) -> None:
        """Fail if a live server is recorded; purge stale or corrupt records."""
        try:
            record = self.store.read_record()
        except StateError as e:
            logger.warning(f"{e}; treating as stale")
            self.store.clear_record()
            return

        if record is None:
            return

        if process_alive(record.pid):
            raise AlreadyRunningError(record.pid)

        logger.warning(f"Removing stale PID record for dead process {record.pid}")
        self.store.clear_record()

    def _popen_kwargs(self, log_handle: Any) -> dict[str, Any]:
        if not self.config.detach:
            # Foreground: stdio is inherited, server output passes straight through
            return {}
        return {
            "stdin": subprocess.DEVNULL,
            "stdout": log_handle,
            "stderr": log_handle,
            "start_new_session": True,
        }

    async def _spawn(self) -> None:
        binary = self.config.binary_path
        env = os.environ.copy()
        env.update(self.config.server_env())

        log_handle = None
        if self.config.detach:
            self.store.ensure_dir()
            try:
                log_handle = open(self.store.log_file, "ab")
            except OSError as e:
                raise SpawnFailedError(binary, f"cannot open log file {self.store.log_file}: {e}") from e

        logger.info(f"Starting server: {binary} (port {self.config.port})")
        try:
            self.process = subprocess.Popen([str(binary)], env=env, **self._popen_kwargs(log_handle))
        except OSError as e:
            raise SpawnFailedError(binary, e) from e
        finally:
            if log_handle is not None:
                log_handle.close()

        try:
            self.record = self.store.write_record(self.process.pid, port=self.config.port)
        except StateError as e:
            await self._terminate()
            raise SpawnFailedError(binary, e) from e

        logger.info(f"Server started with PID {self.process.pid}")

    async def _await_health(self) -> HealthStatus:
        """Wait for health while watching for the child exiting first."""
        health_task = asyncio.create_task(self.waiter.wait_until_ready(self.config.health_url))
        exit_task = asyncio.create_task(self._wait_exit())
        try:
            done, _ = await asyncio.wait(
                {health_task, exit_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (health_task, exit_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(health_task, exit_task, return_exceptions=True)

        if health_task in done:
            return health_task.result()

        code = exit_task.result()
        raise SpawnFailedError(
            self.config.binary_path,
            f"server exited with code {code} before becoming healthy",
        )

    # --- Foreground supervision ---

    async def _wait_exit(self, timeout: Optional[float] = None) -> Optional[int]:
        """Poll the child until it exits. Returns None if `timeout` elapses first."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            code = self.process.poll()
            if code is not None:
                return code
            if deadline is not None and time.monotonic() >= deadline:
                return None
            await asyncio.sleep(EXIT_POLL_INTERVAL)

    async def wait(self) -> int:
        """Wait for the server to exit and return its exit code."""
        if self.process is None:
            raise RuntimeError("No server process to wait for")
        code = await self._wait_exit()
        logger.info(f"Server (PID {self.process.pid}) exited with code {code}")
        self._set_state(SupervisorState.STOPPED)
        return code

    async def _terminate(self) -> None:
        """SIGTERM the child, escalating to SIGKILL after stop_timeout."""
        proc = self.process
        if proc is None or proc.poll() is not None:
            return

        self._set_state(SupervisorState.STOPPING)
        logger.info(f"Stopping server (PID {proc.pid})")
        try:
            proc.terminate()
        except ProcessLookupError:
            pass

        if await self._wait_exit(self.stop_timeout) is None:
            logger.warning(f"Server (PID {proc.pid}) didn't stop gracefully, killing")
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await self._wait_exit()
        self._set_state(SupervisorState.STOPPED)

    @asynccontextmanager
    async def session(self) -> AsyncIterator["Supervisor"]:
        """
        Scope one supervised run.

        On exit (normal, error or cancellation) a foreground server is stopped
        and its record cleared. A detached server keeps running and keeps its
        record unless startup failed.
        """
        succeeded = False
        try:
            yield self
            succeeded = True
        finally:
            keep = self.config.detach and succeeded and self.state == SupervisorState.READY
            if not keep:
                await self._terminate()
                self._release_record()

    def _release_record(self) -> None:
        # Only clear a record this supervisor wrote; AlreadyRunning leaves state alone
        if self.record is None:
            return
        try:
            self.store.clear_record()
        except StateError as e:
            logger.error(f"{e}")
        self.record = None


def stop_recorded_server(
    store: StateStore,
    timeout: float = 5.0,
    poll_interval: float = 0.1,
) -> Optional[int]:
    """
    Stop the server recorded in `store`.

    Sends SIGTERM, waits up to `timeout` for the process to go away, then
    SIGKILL. The record is cleared in every case where the process is gone.

    :return: The PID that was stopped, or None if nothing was running.
    :raises StopFailedError: If the process survives SIGKILL.
    """
    try:
        record = store.read_record()
    except StateError as e:
        logger.warning(f"{e}; removing it")
        store.clear_record()
        return None

    if record is None:
        return None

    pid = record.pid
    if not process_alive(pid):
        logger.info(f"Removing stale PID record for dead process {pid}")
        store.clear_record()
        return None

    logger.info(f"Sending SIGTERM to server (PID {pid})")
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        store.clear_record()
        return pid
    except OSError as e:
        raise StopFailedError(pid) from e

    if not _wait_for_exit(pid, timeout, poll_interval):
        logger.warning(f"Server (PID {pid}) didn't stop gracefully, killing")
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except OSError as e:
            raise StopFailedError(pid) from e
        if not _wait_for_exit(pid, timeout, poll_interval):
            raise StopFailedError(pid)

    store.clear_record()
    return pid


def _reap(pid: int) -> None:
    # A server detached by this same process stays a zombie until reaped
    try:
        os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        pass


def _wait_for_exit(pid: int, timeout: float, poll_interval: float) -> bool:
    deadline = time.monotonic() + timeout
    while True:
        _reap(pid)
        if not process_alive(pid):
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(poll_interval)
