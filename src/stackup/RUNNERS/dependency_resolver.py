"""
Tier classification and dependency ordering of services.
"""
from fnmatch import fnmatch
from typing import Dict, List, Sequence

import structlog

from ..exceptions import ClassificationError
from ..MODELS.lifecycle_session import Tier
from ..MODELS.service_definition import ServiceDefinition, TierName

logger = structlog.get_logger(__name__)


class DependencyClassifier:
    """
    Assigns every service to a tier and produces the ordered tier list.

    An explicit tier always wins. Without one, a naming heuristic is applied
    when ``infer_tiers`` is enabled.
    """
    DATABASE_KEYWORDS = ("postgres", "postgresql", "mongodb", "mongo", "redis", "mysql", "mariadb")
    GATEWAY_PATTERNS = ("*-gateway", "api-gateway", "gateway")
    FRONTEND_PATTERNS = ("frontend-*", "*-frontend", "frontend")

    def __init__(self, infer_tiers: bool = True):
        self.infer_tiers = infer_tiers

    @classmethod
    def infer_tier(cls, name: str) -> TierName:
        """
        Guesses a tier from a service name.

        :param name: Service name, e.g. ``api-gateway`` or ``frontend-service``.
        :return: The inferred tier; ``backend`` when nothing else matches.
        """
        lowered = name.lower()
        parts = lowered.split('-')
        if any(keyword in parts for keyword in cls.DATABASE_KEYWORDS):
            return TierName.DATABASE
        if any(fnmatch(lowered, pattern) for pattern in cls.GATEWAY_PATTERNS):
            return TierName.GATEWAY
        if any(fnmatch(lowered, pattern) for pattern in cls.FRONTEND_PATTERNS):
            return TierName.FRONTEND
        return TierName.BACKEND

    def tier_of(self, service: ServiceDefinition) -> TierName:
        """
        Resolves the tier of one service.

        :raises ClassificationError: If the service has no tier and inference is off.
        """
        if service.tier is not None:
            return service.tier
        if not self.infer_tiers:
            raise ClassificationError(
                f"Service {service.name} has no tier and tier inference is disabled",
                {"service": service.name},
            )
        tier = self.infer_tier(service.name)
        logger.debug("tier_inferred", service=service.name, tier=tier.value)
        return tier

    def classify(self, services: Sequence[ServiceDefinition]) -> List[Tier]:
        """
        Buckets services into ordered tiers, omitting empty tiers.

        Inside a tier, services keep dependency order with declaration order
        as the tiebreak.

        :param services: The catalog services.
        :return: Tiers ordered database, backend, gateway, frontend.
        :raises ClassificationError: On unassignable services, dependencies on
            a later tier, or dependency cycles.
        """
        tiers = {svc.name: self.tier_of(svc) for svc in services}

        for svc in services:
            for dep in svc.depends_on:
                if dep in tiers and tiers[dep].rank > tiers[svc.name].rank:
                    raise ClassificationError(
                        f"Service {svc.name} ({tiers[svc.name].value}) depends on {dep} "
                        f"in later tier {tiers[dep].value}",
                        {"service": svc.name, "dependency": dep},
                    )

        by_name = {svc.name: svc for svc in services}
        buckets: Dict[TierName, List[ServiceDefinition]] = {name: [] for name in TierName.ordered()}
        for name in self.resolve_order(services):
            buckets[tiers[name]].append(by_name[name])

        ordered = [Tier(name=tier, services=members) for tier, members in buckets.items() if members]
        logger.info(
            "tiers_planned",
            tiers={tier.name.value: tier.service_names for tier in ordered},
        )
        return ordered

    def resolve_order(self, services: Sequence[ServiceDefinition]) -> List[str]:
        """
        Determines a dependency-respecting order using topological sort.

        :param services: The services to order.
        :return: Service names, dependencies first.
        :raises ClassificationError: If a circular dependency is detected.
        """
        names = {svc.name for svc in services}
        dependencies = {svc.name: svc.depends_on for svc in services}

        ordered: List[str] = []
        visited = set()
        processing: List[str] = []

        def visit(name):
            """
            Recursive function for topological sort.
            """
            if name in processing:
                cycle = processing[processing.index(name):] + [name]
                raise ClassificationError(
                    f"Circular dependency detected: {' -> '.join(cycle)}",
                    {"cycle": cycle},
                )
            if name not in visited:
                processing.append(name)
                for dep in dependencies.get(name, []):
                    if dep in names:  # Only depend on services in this run
                        visit(dep)
                processing.pop()
                visited.add(name)
                ordered.append(name)

        for svc in services:
            visit(svc.name)

        return ordered
