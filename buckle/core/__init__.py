"""Process lifecycle core: state store, liveness, health waiting, supervision."""

from buckle.core.health import HealthStatus, HealthWaiter
from buckle.core.liveness import process_alive
from buckle.core.state import ProcessRecord, StateStore
from buckle.core.supervisor import StartOutcome, Supervisor, SupervisorState

__all__ = [
    "HealthStatus",
    "HealthWaiter",
    "ProcessRecord",
    "StartOutcome",
    "StateStore",
    "Supervisor",
    "SupervisorState",
    "process_alive",
]
