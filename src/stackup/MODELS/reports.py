"""
Read-only results handed back to the operator: status summaries and teardown results.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .lifecycle_session import LifecycleState, ReadinessResult, ServiceStatus
from .service_definition import TierName
from ..exceptions import PartialTeardownError


@dataclass
class ServiceReport:
    """One row of a status summary."""

    name: str
    tier: Optional[TierName]
    status: ServiceStatus
    endpoints: List[str] = field(default_factory=list)
    credentials: Optional[str] = None
    readiness: Optional[ReadinessResult] = None


@dataclass
class StatusSummary:
    """Snapshot of every declared service and the run as a whole."""

    services: List[ServiceReport]
    state: Optional[LifecycleState] = None
    all_tiers_satisfied: bool = False
    target: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    def status_of(self, name: str) -> Optional[ServiceStatus]:
        for report in self.services:
            if report.name == name:
                return report.status
        return None

    @property
    def statuses(self) -> Dict[str, ServiceStatus]:
        return {report.name: report.status for report in self.services}

    @property
    def endpoints(self) -> List[str]:
        return [ep for report in self.services for ep in report.endpoints]


@dataclass
class TeardownOptions:
    remove_volumes: bool = False
    prune_images: bool = False
    stop_cluster: bool = False


@dataclass
class TeardownResult:
    """
    Outcome of a best-effort teardown. Failures are collected, not raised.
    """

    stopped: List[str] = field(default_factory=list)
    not_running: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    cleanup_errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures and not self.cleanup_errors

    def raise_for_failures(self) -> None:
        if self.ok:
            return
        failures = dict(self.failures)
        for index, error in enumerate(self.cleanup_errors):
            failures[f"cleanup[{index}]"] = error
        raise PartialTeardownError(failures)
