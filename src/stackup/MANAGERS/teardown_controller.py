"""
Best-effort teardown of a stack in reverse tier order.
"""
from typing import Dict, Iterable, List, Optional, Sequence

import structlog

from ..EXECUTORS.base import Executor
from ..exceptions import ClassificationError, ExecutorError
from ..MODELS.reports import TeardownOptions, TeardownResult
from ..MODELS.service_definition import ServiceDefinition, TierName
from ..RUNNERS.dependency_resolver import DependencyClassifier

logger = structlog.get_logger(__name__)


class TeardownController:
    """
    Stops services frontend-first so that clients go away before the
    services they talk to.

    A failure to stop one service never prevents attempts on the others;
    all failures are collected in the returned result.
    """

    def __init__(self,
                 executor: Executor,
                 services: Sequence[ServiceDefinition] = (),
                 classifier: Optional[DependencyClassifier] = None):
        """
        :param executor: The executor to stop services with.
        :param services: Catalog used to order names by tier.
        :param classifier: Resolves tiers of services without an explicit one.
        """
        self.executor = executor
        self.services = {svc.name: svc for svc in services}
        self.classifier = classifier or DependencyClassifier()

    def stop_order(self, service_names: Iterable[str]) -> List[List[str]]:
        """
        Groups names into stop batches: names unknown to the catalog first,
        then frontend, gateway, backend, database.
        """
        unknown: List[str] = []
        batches: Dict[TierName, List[str]] = {tier: [] for tier in reversed(TierName.ordered())}
        for name in service_names:
            svc = self.services.get(name)
            if svc is None:
                unknown.append(name)
                continue
            try:
                tier = self.classifier.tier_of(svc)
            except ClassificationError:
                tier = DependencyClassifier.infer_tier(name)
            batches[tier].append(name)

        ordered = [unknown] if unknown else []
        ordered += [names for names in batches.values() if names]
        return ordered

    def teardown(self,
                 service_names: Iterable[str],
                 options: Optional[TeardownOptions] = None) -> TeardownResult:
        """
        Stops the given services that are currently running.

        :param service_names: Services to stop.
        :param options: Volume/image/cluster cleanup switches.
        :return: What was stopped, what was not running, and every failure.
        :raises ConnectivityError: If the executor cannot list running services.
        """
        options = options or TeardownOptions()
        requested = list(dict.fromkeys(service_names))
        running = self.executor.list_running()

        result = TeardownResult()
        result.not_running = [name for name in requested if name not in running]
        targets = [name for name in requested if name in running]

        if not targets:
            logger.info("teardown_nothing_running", requested=len(requested))
        for batch in self.stop_order(targets):
            self._stop_batch(batch, options, result)

        result.cleanup_errors = self.executor.cleanup(options)
        for error in result.cleanup_errors:
            logger.warning("cleanup_failed", error=error)

        logger.info(
            "teardown_finished",
            stopped=result.stopped,
            failures=sorted(result.failures),
        )
        return result

    def _stop_batch(self, batch: List[str], options: TeardownOptions, result: TeardownResult) -> None:
        logger.info("stopping_services", services=batch)
        try:
            acks = self.executor.stop(batch, options)
        except ExecutorError as e:
            for name in batch:
                result.failures[name] = e.message
            logger.warning("stop_failed", services=batch, error=e.message)
            return

        for name in batch:
            ack = acks.get(name)
            if ack is not None and ack.ok:
                result.stopped.append(name)
            else:
                result.failures[name] = ack.detail if ack else "no acknowledgement from executor"
                logger.warning("stop_failed", service=name, error=result.failures[name])
