"""
Error taxonomy for the launcher.

An absent PID record is not an error: StateStore.read_record() returns None.
A health-check timeout is an outcome (HealthStatus.TIMED_OUT), not an exception.
"""

from pathlib import Path
from typing import Optional

from buckle.exit_codes import ExitCode


class BuckleError(Exception):
    """Base class for launcher errors. Carries the exit code the CLI should use."""

    exit_code: ExitCode = ExitCode.FAILED_TO_START_SERVER


class InvalidConfigError(BuckleError):
    """Launch configuration could not be built from flags and environment."""

    exit_code = ExitCode.INCORRECT_CLI_ARGUMENTS


class StateError(BuckleError):
    """Reading or writing the state directory failed."""

    def __init__(self, message: str, path: Optional[Path] = None):
        super().__init__(message)
        self.path = path


class CorruptStateError(StateError):
    """The PID file exists but does not hold a positive integer."""

    def __init__(self, path: Path, content: str):
        super().__init__(f"PID file {path} holds invalid content: {content!r}", path)
        self.content = content


class AlreadyRunningError(BuckleError):
    """A live process is already recorded for this state directory."""

    exit_code = ExitCode.ALREADY_RUNNING

    def __init__(self, pid: int):
        super().__init__(f"Buckle is already running (process: {pid})")
        self.pid = pid


class SpawnFailedError(BuckleError):
    """The server process could not be started, or died before becoming ready."""

    exit_code = ExitCode.FAILED_TO_START_SERVER

    def __init__(self, binary: Path, cause: object):
        super().__init__(f"Failed to start server {binary}: {cause}")
        self.binary = binary
        self.cause = cause


class StopFailedError(BuckleError):
    """The recorded server process survived termination."""

    exit_code = ExitCode.FAILED_TO_STOP_SERVER

    def __init__(self, pid: int):
        super().__init__(f"Failed to stop server (process: {pid})")
        self.pid = pid
