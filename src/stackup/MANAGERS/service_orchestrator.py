# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Tier-by-tier orchestration of a stack, gated on readiness.
"""
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Sequence

import structlog

from .readiness_probe import ReadinessProbe
from .teardown_controller import TeardownController
from ..EXECUTORS.base import Executor, ServiceAck
from ..exceptions import (
    CatalogError,
    ClassificationError,
    ConnectivityError,
    ExecutorError,
    OperationCancelled,
    PrerequisiteError,
    ReadinessFailure,
    StackupError,
)
from ..MODELS.lifecycle_session import (
    LifecycleSession,
    LifecycleState,
    ReadinessOutcome,
    ReadinessResult,
    ServiceStatus,
    Tier,
)
from ..MODELS.orchestration_config import GatingPolicy, OrchestratorConfig
from ..MODELS.service_definition import ServiceDefinition
from ..RUNNERS.dependency_resolver import DependencyClassifier

logger = structlog.get_logger(__name__)


class LifecycleController:
    """
    Drives a stack from Idle to Running (or Failed/Aborted).

    Tiers run strictly one after another on the calling thread. Inside a
    tier every service is started and probed on a bounded thread pool, and
    the next tier is only submitted once all of that work has finished.
    Already-started tiers are never rolled back on failure; only an operator
    cancel triggers a teardown of what was started.
    """
    def __init__(self,
                 executor: Executor,
                 config: Optional[OrchestratorConfig] = None,
                 classifier: Optional[DependencyClassifier] = None):
        """
        Initializes the controller.

        :param executor: Starts, stops and health-checks the services.
        :param config: Run settings (concurrency, gating policy).
        :param classifier: Tier classifier, built from the settings when omitted.
        """
        self.executor = executor
        self.config = config or OrchestratorConfig()
        self.classifier = classifier or DependencyClassifier(infer_tiers=self.config.infer_tiers)
        self._session: Optional[LifecycleSession] = None

    @property
    def session(self) -> Optional[LifecycleSession]:
        return self._session

    def cancel(self) -> None:
        """
        Requests a prompt stop of the current run. Safe to call from any thread.
        """
        if self._session is not None:
            logger.warning("cancel_requested", state=self._session.state.value)
            self._session.cancelled.set()

    def run(self, services: Sequence[ServiceDefinition]) -> LifecycleSession:
        """
        Brings the given services up tier by tier.

        The session is always returned, whatever the outcome, so that a
        status summary can be rendered from it.

        :param services: Catalog services to bring up.
        :return: The finished session, in a terminal state.
        """
        session = LifecycleSession(services=list(services))
        self._session = session
        try:
            self._drive(session)
        except KeyboardInterrupt:
            logger.warning("interrupted", state=session.state.value)
            session.cancelled.set()
        except Exception as e:
            logger.exception("run_crashed", state=session.state.value)
            if not session.cancelled.is_set() and not session.terminal:
                self._fail_unexpected(session, e)
        finally:
            if session.cancelled.is_set() and not session.terminal:
                self._abort_cancelled(session)
        return session

    def _drive(self, session: LifecycleSession) -> None:
        try:
            self.executor.check_prerequisites()
            self.executor.prepare()
        except (PrerequisiteError, ConnectivityError) as e:
            self._fail(session, e)
            return
        if session.cancelled.is_set():
            return

        session.transition(LifecycleState.PLANNING)
        try:
            session.tiers = self.classifier.classify(session.services)
        except (CatalogError, ClassificationError) as e:
            self._fail(session, e)
            return

        for index, tier in enumerate(session.tiers):
            if session.cancelled.is_set():
                return
            session.transition(LifecycleState.STARTING_TIER, tier_index=index)
            logger.info("tier_starting", tier=tier.name.value, index=index, services=tier.service_names)

            results = self._run_tier(session, tier)
            if session.cancelled.is_set():
                return

            not_ready = [result for result in results if not result.ready]
            if not not_ready:
                logger.info("tier_satisfied", tier=tier.name.value)
                continue

            if self.config.gating is GatingPolicy.STRICT:
                session.transition(LifecycleState.ABORTING)
                first = not_ready[0]
                session.error = ReadinessFailure(first.service, first.outcome.value, first.attempts)
                logger.error(
                    "tier_aborted",
                    tier=tier.name.value,
                    not_ready=[result.service for result in not_ready],
                    skipped_tiers=[t.name.value for t in session.tiers[index + 1:]],
                )
                session.transition(LifecycleState.FAILED)
                return

            logger.warning(
                "tier_degraded",
                tier=tier.name.value,
                not_ready=[result.service for result in not_ready],
            )

        session.transition(LifecycleState.RUNNING)
        logger.info("stack_running", elapsed=round(session.elapsed, 3))

    def _run_tier(self, session: LifecycleSession, tier: Tier) -> List[ReadinessResult]:
        """
        Starts and probes every service of a tier on the worker pool,
        returning once all of them have concluded.
        """
        probe = ReadinessProbe(self.executor, cancel_event=session.cancelled)
        workers = max(1, min(self.config.concurrency, len(tier.services)))
        acks = self._start_tier(session, tier) if self.executor.batch_start else {}

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"stackup-{tier.name.value}") as pool:
            futures = [
                pool.submit(self._start_and_probe, session, probe, svc, acks.get(svc.name))
                for svc in tier.services
            ]
            session.transition(LifecycleState.VERIFYING_TIER)
            try:
                pending = set(futures)
                while pending:
                    _, pending = wait(pending, timeout=self.config.wait_slice)
            except KeyboardInterrupt:
                # Wake sleeping probes before the pool joins its workers
                session.cancelled.set()
                raise

        return [future.result() for future in futures]

    def _start_tier(self, session: LifecycleSession, tier: Tier) -> Dict[str, ServiceAck]:
        """
        Starts a whole tier with one executor call, for executors whose
        concurrent start calls would race on shared resources.
        """
        names = tier.service_names
        for name in names:
            session.set_status(name, ServiceStatus.STARTING)
        try:
            acks = self.executor.start(names)
        except ExecutorError as e:
            acks = {}
            detail = e.message
        else:
            detail = "no acknowledgement from executor"
        return {
            name: acks.get(name) or ServiceAck(service=name, ok=False, detail=detail)
            for name in names
        }

    def _start_and_probe(self,
                         session: LifecycleSession,
                         probe: ReadinessProbe,
                         svc: ServiceDefinition,
                         ack: Optional[ServiceAck] = None) -> ReadinessResult:
        try:
            return self._start_and_probe_unguarded(session, probe, svc, ack)
        except Exception as e:
            logger.exception("service_crashed", service=svc.name)
            session.set_status(svc.name, ServiceStatus.FAILED)
            result = ReadinessResult(svc.name, 0, 0.0, ReadinessOutcome.FAILED, f"{type(e).__name__}: {e}")
            session.record(result)
            return result

    def _start_and_probe_unguarded(self,
                                   session: LifecycleSession,
                                   probe: ReadinessProbe,
                                   svc: ServiceDefinition,
                                   ack: Optional[ServiceAck]) -> ReadinessResult:
        if session.cancelled.is_set() and ack is None:
            result = ReadinessResult(svc.name, 0, 0.0, ReadinessOutcome.CANCELLED, "not started")
            session.record(result)
            return result

        if ack is None:
            session.set_status(svc.name, ServiceStatus.STARTING)
            try:
                ack = self.executor.start([svc.name]).get(svc.name)
            except ExecutorError as e:
                ack = ServiceAck(service=svc.name, ok=False, detail=e.message)

        if ack is None or not ack.ok:
            detail = ack.detail if ack else "no acknowledgement from executor"
            logger.error("service_start_failed", service=svc.name, error=detail)
            session.set_status(svc.name, ServiceStatus.FAILED)
            result = ReadinessResult(svc.name, 0, 0.0, ReadinessOutcome.FAILED, detail)
            session.record(result)
            return result

        result = probe.probe(svc)
        session.record(result)
        if result.ready:
            session.set_status(svc.name, ServiceStatus.READY)
        elif result.outcome is not ReadinessOutcome.CANCELLED:
            session.set_status(svc.name, ServiceStatus.FAILED)
        return result

    def _fail(self, session: LifecycleSession, error: StackupError) -> None:
        logger.error("run_failed", state=session.state.value, error=str(error))
        session.error = error
        session.transition(LifecycleState.FAILED)

    def _fail_unexpected(self, session: LifecycleSession, error: Exception) -> None:
        """
        Ends the session Failed after an error none of the phases handled.
        Tier states can only fail through Aborting.
        """
        if not isinstance(error, StackupError):
            error = StackupError(f"Unexpected error: {error}", {"type": type(error).__name__})
        if session.state in (LifecycleState.STARTING_TIER, LifecycleState.VERIFYING_TIER):
            session.transition(LifecycleState.ABORTING)
        session.error = error
        session.transition(LifecycleState.FAILED)

    def _abort_cancelled(self, session: LifecycleSession) -> None:
        """
        Best-effort teardown of whatever was started before the cancel.
        """
        started = session.names_in(ServiceStatus.STARTING, ServiceStatus.READY)
        logger.warning("run_cancelled", state=session.state.value, started=started)
        if started:
            teardown = TeardownController(self.executor, session.services, self.classifier)
            try:
                result = teardown.teardown(started)
            except Exception as e:
                logger.error("cancel_teardown_failed", error=str(e))
            else:
                for name in result.stopped + result.not_running:
                    session.set_status(name, ServiceStatus.STOPPED)
                if result.failures:
                    logger.error("cancel_teardown_incomplete", failures=result.failures)
        session.error = OperationCancelled("Run cancelled by operator")
        session.transition(LifecycleState.ABORTED)
