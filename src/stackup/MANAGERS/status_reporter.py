"""
Status summaries of a stack, from a finished session or from a cold query.
"""
from typing import Dict, List, Optional, Sequence

import structlog
from jinja2 import Template

from ..EXECUTORS.base import Executor, HealthState
from ..exceptions import ClassificationError, ExecutorError, StackupError
from ..MODELS.lifecycle_session import LifecycleSession, ServiceStatus
from ..MODELS.reports import ServiceReport, StatusSummary
from ..MODELS.service_definition import ServiceDefinition, TierName
from ..RUNNERS.dependency_resolver import DependencyClassifier

logger = structlog.get_logger(__name__)

STATUS_TEMPLATE = """\
==============================================
 Stack status: {{ state }}
==============================================
{% for key, value in target.items() %}{{ '%-10s' | format(key ~ ':') }} {{ value }}
{% endfor %}{% if error %}Error:     {{ error }}
{% endif %}
{% for tier, reports in groups %}[{{ tier }}]
{% for r in reports %}  {{ '%-22s' | format(r.name) }} {{ '%-9s' | format(r.status.value) }}{% if r.readiness %} ({{ r.readiness.attempts }} attempts, {{ '%.1f' | format(r.readiness.elapsed) }}s){% endif %}
{% for ep in r.endpoints %}      -> {{ ep }}
{% endfor %}{% if r.credentials %}      credentials: {{ r.credentials }}
{% endif %}{% endfor %}
{% endfor %}{% if commands %}Useful commands:
{% for cmd in commands %}  {{ cmd }}
{% endfor %}{% endif %}"""


class StatusReporter:
    """
    Builds read-only status summaries. Never starts or stops anything.
    """

    def __init__(self, executor: Executor, classifier: Optional[DependencyClassifier] = None):
        """
        :param executor: Queried for running services, health and target details.
        :param classifier: Resolves tiers for grouping.
        """
        self.executor = executor
        self.classifier = classifier or DependencyClassifier()
        self.template = Template(STATUS_TEMPLATE)

    def _tier(self, svc: ServiceDefinition) -> Optional[TierName]:
        try:
            return self.classifier.tier_of(svc)
        except ClassificationError:
            return svc.tier

    def _target(self) -> Dict[str, str]:
        try:
            return self.executor.describe_target()
        except ExecutorError as e:
            logger.debug("describe_target_failed", error=str(e))
            return {"executor": self.executor.kind}

    def report(self, session: LifecycleSession) -> StatusSummary:
        """
        Summarizes a session. Endpoints are only listed for ready services.

        :param session: A session returned by the lifecycle controller.
        :return: The summary.
        """
        statuses = session.snapshot()
        reports = []
        for svc in session.services:
            status = statuses.get(svc.name, ServiceStatus.PENDING)
            reports.append(ServiceReport(
                name=svc.name,
                tier=self._tier(svc),
                status=status,
                endpoints=list(svc.endpoints) if status is ServiceStatus.READY else [],
                credentials=svc.credentials,
                readiness=session.results.get(svc.name),
            ))
        return StatusSummary(
            services=reports,
            state=session.state,
            all_tiers_satisfied=session.all_tiers_satisfied,
            target=self._target(),
            error=str(session.error) if session.error else None,
        )

    def query(self, services: Sequence[ServiceDefinition]) -> StatusSummary:
        """
        Asks the executor what is running right now, with one health check
        per running service.

        An unreachable executor is reported in ``error`` instead of raised.

        :param services: Catalog services to report on.
        :return: The summary, with no lifecycle state.
        """
        error = None
        try:
            running = self.executor.list_running()
        except StackupError as e:
            logger.warning("status_query_failed", error=str(e))
            running = set()
            error = str(e)

        reports = []
        for svc in services:
            if svc.name not in running:
                status = ServiceStatus.STOPPED
            else:
                try:
                    health = self.executor.health_check(svc.name, svc.readiness)
                except ExecutorError as e:
                    logger.debug("health_check_failed", service=svc.name, error=str(e))
                    health = HealthState.UNKNOWN
                status = ServiceStatus.READY if health is HealthState.HEALTHY else ServiceStatus.STARTING
            reports.append(ServiceReport(
                name=svc.name,
                tier=self._tier(svc),
                status=status,
                endpoints=list(svc.endpoints) if status is ServiceStatus.READY else [],
                credentials=svc.credentials,
            ))

        return StatusSummary(
            services=reports,
            all_tiers_satisfied=error is None and bool(reports) and all(
                r.status is ServiceStatus.READY for r in reports
            ),
            target=self._target(),
            error=error,
        )

    def render(self, summary: StatusSummary) -> str:
        """
        Renders the text report shown to the operator.
        """
        groups: Dict[str, List[ServiceReport]] = {}
        for tier in TierName.ordered():
            groups[tier.value] = []
        groups["unclassified"] = []
        for report in summary.services:
            groups[report.tier.value if report.tier else "unclassified"].append(report)

        if summary.state is not None:
            state = summary.state.value
        elif summary.error:
            state = "unreachable"
        elif summary.all_tiers_satisfied:
            state = "running"
        elif all(r.status is ServiceStatus.STOPPED for r in summary.services):
            state = "stopped"
        else:
            state = "degraded"

        return self.template.render(
            state=state,
            target=summary.target,
            error=summary.error,
            groups=[(tier, reports) for tier, reports in groups.items() if reports],
            commands=self.executor.helpful_commands(),
        )
