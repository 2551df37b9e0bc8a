"""Process exit codes for the Buckle CLI."""

from enum import IntEnum


class ExitCode(IntEnum):
    """Caller-visible exit codes. Values are stable across releases."""

    SUCCESS = 0
    INCORRECT_CLI_ARGUMENTS = 1
    ALREADY_RUNNING = 2
    FAILED_TO_START_SERVER = 3
    FAILED_TO_STOP_SERVER = 4

    # Conventional 128 + SIGINT
    INTERRUPTED = 130
