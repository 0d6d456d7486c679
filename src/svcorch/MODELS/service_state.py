"""
Runtime state of services: lifecycle states, instances, transition events and run results.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, List, Optional

from ..MANAGERS.runtime_driver import InstanceHandle


class ServiceState(str, Enum):
    """Lifecycle state of a service instance."""

    PENDING = "pending"
    BLOCKED = "blocked"
    LAUNCHING = "launching"
    AWAITING_HEALTH = "awaiting_health"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


ALLOWED_TRANSITIONS: Dict[ServiceState, FrozenSet[ServiceState]] = {
    ServiceState.PENDING: frozenset({
        ServiceState.LAUNCHING, ServiceState.BLOCKED, ServiceState.DEGRADED, ServiceState.STOPPED,
    }),
    ServiceState.BLOCKED: frozenset({ServiceState.PENDING, ServiceState.STOPPED}),
    ServiceState.LAUNCHING: frozenset({
        ServiceState.AWAITING_HEALTH, ServiceState.HEALTHY, ServiceState.DEGRADED,
        ServiceState.STOPPING, ServiceState.STOPPED,
    }),
    ServiceState.AWAITING_HEALTH: frozenset({
        ServiceState.HEALTHY, ServiceState.DEGRADED, ServiceState.STOPPING,
    }),
    ServiceState.HEALTHY: frozenset({
        ServiceState.DEGRADED, ServiceState.STOPPING, ServiceState.STOPPED,
    }),
    ServiceState.DEGRADED: frozenset({
        ServiceState.LAUNCHING, ServiceState.BLOCKED, ServiceState.STOPPING, ServiceState.STOPPED,
    }),
    ServiceState.STOPPING: frozenset({ServiceState.STOPPED}),
    ServiceState.STOPPED: frozenset({ServiceState.LAUNCHING, ServiceState.BLOCKED}),
}


def utc_now() -> str:
    """ISO-8601 UTC timestamp with a Z suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class TransitionEvent:
    """
    One state change of one service, emitted in order to every event sink.
    """

    service: str
    old_state: ServiceState
    new_state: ServiceState
    timestamp: str
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "service": self.service,
            "old_state": self.old_state.value,
            "new_state": self.new_state.value,
            "timestamp": self.timestamp,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class ServiceInstance:
    """
    Control-loop bookkeeping for one service. Mutated only by the control loop.
    """

    name: str
    state: ServiceState = ServiceState.PENDING
    handle: Optional[InstanceHandle] = None
    restarts: int = 0
    launches: int = 0
    failures: int = 0  # consecutive, reset on healthy
    last_error: Optional[Dict[str, Any]] = None
    explicitly_stopped: bool = False
    settled: bool = False

    def can_transition(self, new_state: ServiceState) -> bool:
        return new_state in ALLOWED_TRANSITIONS[self.state]


@dataclass(frozen=True)
class ServiceSummary:
    """Per-service row of the summary table."""

    name: str
    state: ServiceState
    restarts: int = 0
    error: Optional[Dict[str, Any]] = None


class ExitCode(IntEnum):
    """
    Process exit codes of the command surface, ordered by severity.
    """

    OK = 0
    CONFIG_ERROR = 2
    LAUNCH_FAILURE = 3
    PARTIAL = 4

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    ExitCode.OK: 0,
    ExitCode.PARTIAL: 1,
    ExitCode.LAUNCH_FAILURE: 2,
    ExitCode.CONFIG_ERROR: 3,
}

_LAUNCH_FAILURE_KINDS = {"secret_unavailable", "runtime_driver_error"}


@dataclass
class RunResult:
    """
    Aggregate outcome of an ``up`` or ``down`` run.
    """

    services: Dict[str, ServiceSummary] = field(default_factory=dict)

    @property
    def exit_code(self) -> ExitCode:
        worst = ExitCode.OK
        for summary in self.services.values():
            code = _outcome(summary)
            if code.severity > worst.severity:
                worst = code
        return worst

    @property
    def ok(self) -> bool:
        return self.exit_code == ExitCode.OK

    def failed(self) -> List[str]:
        """Names of services that did not reach a requested state."""
        return [name for name, summary in sorted(self.services.items())
                if _outcome(summary) != ExitCode.OK]


def _outcome(summary: ServiceSummary) -> ExitCode:
    if summary.state in (ServiceState.HEALTHY, ServiceState.STOPPED):
        return ExitCode.OK
    if summary.error and summary.error.get("kind") in _LAUNCH_FAILURE_KINDS:
        return ExitCode.LAUNCH_FAILURE
    return ExitCode.PARTIAL
