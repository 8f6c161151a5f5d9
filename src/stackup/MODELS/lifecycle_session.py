"""
In-memory state of a single up/down invocation.
"""
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .service_definition import ServiceDefinition, TierName
from ..exceptions import StackupError


class ServiceStatus(str, Enum):
    """Last known state of a service within a session."""

    PENDING = "pending"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


class LifecycleState(str, Enum):
    """States of the tier-by-tier startup state machine."""

    IDLE = "idle"
    PLANNING = "planning"
    STARTING_TIER = "starting_tier"
    VERIFYING_TIER = "verifying_tier"
    ABORTING = "aborting"
    RUNNING = "running"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset(
    {LifecycleState.RUNNING, LifecycleState.FAILED, LifecycleState.ABORTED}
)

_TRANSITIONS = {
    LifecycleState.IDLE: {LifecycleState.PLANNING, LifecycleState.FAILED, LifecycleState.ABORTED},
    LifecycleState.PLANNING: {
        LifecycleState.STARTING_TIER,
        LifecycleState.RUNNING,
        LifecycleState.FAILED,
        LifecycleState.ABORTED,
    },
    LifecycleState.STARTING_TIER: {
        LifecycleState.VERIFYING_TIER,
        LifecycleState.ABORTING,
        LifecycleState.ABORTED,
    },
    LifecycleState.VERIFYING_TIER: {
        LifecycleState.STARTING_TIER,
        LifecycleState.ABORTING,
        LifecycleState.RUNNING,
        LifecycleState.ABORTED,
    },
    LifecycleState.ABORTING: {LifecycleState.FAILED, LifecycleState.ABORTED},
}


class ReadinessOutcome(str, Enum):
    READY = "ready"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class ReadinessResult:
    """Outcome of probing one service."""

    service: str
    attempts: int
    elapsed: float
    outcome: ReadinessOutcome
    detail: str = ""

    @property
    def ready(self) -> bool:
        return self.outcome is ReadinessOutcome.READY


@dataclass
class Tier:
    """Services sharing a tier, in the order they are submitted."""

    name: TierName
    services: List[ServiceDefinition] = field(default_factory=list)

    @property
    def service_names(self) -> List[str]:
        return [svc.name for svc in self.services]


@dataclass
class LifecycleSession:
    """
    Owns the per-service status map of one invocation.

    Worker threads update statuses concurrently, so every mutation goes
    through the session lock.
    """

    services: List[ServiceDefinition]
    statuses: Dict[str, ServiceStatus] = field(default_factory=dict)
    state: LifecycleState = LifecycleState.IDLE
    tier_index: int = -1
    tiers: List[Tier] = field(default_factory=list)
    results: Dict[str, ReadinessResult] = field(default_factory=dict)
    history: List[LifecycleState] = field(default_factory=list)
    error: Optional[StackupError] = None
    cancelled: threading.Event = field(default_factory=threading.Event, repr=False)
    started_at: float = field(default_factory=time.monotonic)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self):
        for svc in self.services:
            self.statuses.setdefault(svc.name, ServiceStatus.PENDING)
        self.history.append(self.state)

    def transition(self, state: LifecycleState, tier_index: Optional[int] = None) -> None:
        """
        Moves the state machine, rejecting transitions it does not allow.
        """
        with self._lock:
            allowed = _TRANSITIONS.get(self.state, set())
            if state not in allowed:
                raise RuntimeError(f"Invalid lifecycle transition {self.state.value} -> {state.value}")
            self.state = state
            if tier_index is not None:
                self.tier_index = tier_index
            self.history.append(state)

    def set_status(self, name: str, status: ServiceStatus) -> None:
        with self._lock:
            self.statuses[name] = status

    def status_of(self, name: str) -> ServiceStatus:
        with self._lock:
            return self.statuses.get(name, ServiceStatus.PENDING)

    def record(self, result: ReadinessResult) -> None:
        with self._lock:
            self.results[result.service] = result

    def names_in(self, *statuses: ServiceStatus) -> List[str]:
        with self._lock:
            return [name for name, status in self.statuses.items() if status in statuses]

    def snapshot(self) -> Dict[str, ServiceStatus]:
        with self._lock:
            return dict(self.statuses)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def all_tiers_satisfied(self) -> bool:
        statuses = self.snapshot()
        return self.state is LifecycleState.RUNNING and all(
            status is ServiceStatus.READY for status in statuses.values()
        )

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at
