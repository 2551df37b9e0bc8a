"""
OS-level liveness probing.

Only answers "does a signalable process with this PID exist". It does not
check that the process is the Buckle server, so a recycled PID reads as alive.
"""

import os


def process_alive(pid: int) -> bool:
    """Check if a process is alive and signalable by the current user."""
    # kill(0, ...) and kill(-n, ...) address process groups, never a single process
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except (OSError, OverflowError):
        # OverflowError: the PID does not fit the platform pid_t
        return False
