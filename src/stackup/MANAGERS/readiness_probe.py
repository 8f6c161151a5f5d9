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
Readiness probing of services: bounded retries with fixed or exponential backoff,
interruptible by a cancellation event.
"""
import threading
import time
from typing import Optional

import structlog
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
    wait_fixed,
)

from ..EXECUTORS.base import Executor, HealthState
from ..exceptions import ExecutorError
from ..MODELS.lifecycle_session import ReadinessOutcome, ReadinessResult
from ..MODELS.service_definition import BackoffStrategy, ReadinessCheck, ServiceDefinition

logger = structlog.get_logger(__name__)

MIN_CHECK_TIMEOUT = 0.1


class _ProbeCancelled(Exception):
    """Raised from the sleep hook to unwind tenacity when the probe is cancelled."""


class ReadinessProbe:
    """
    Polls the executor's health check for a service until it is healthy,
    runs out of attempts, or runs out of time.

    Waiting happens on ``cancel_event``, so setting it wakes every sleeping
    probe immediately. A probe never blocks longer than ``timeout`` plus one
    poll interval and one health check.
    """

    def __init__(self, executor: Executor, cancel_event: Optional[threading.Event] = None):
        """
        Initializes the probe.

        :param executor: Source of the health signal.
        :param cancel_event: Event that aborts in-flight probes when set.
        """
        self.executor = executor
        self.cancel_event = cancel_event or threading.Event()

    def _sleep(self, seconds: float) -> None:
        if self.cancel_event.wait(seconds):
            raise _ProbeCancelled()

    def _stop_if_cancelled(self, retry_state: RetryCallState) -> bool:
        return self.cancel_event.is_set()

    @staticmethod
    def _wait_strategy(readiness: ReadinessCheck):
        """
        Builds the delay between attempts, clamped to what is left of the timeout.
        """
        if readiness.backoff is BackoffStrategy.EXPONENTIAL:
            base = wait_exponential(multiplier=readiness.interval, max=readiness.max_interval)
        else:
            base = wait_fixed(readiness.interval)

        def wait(retry_state: RetryCallState) -> float:
            remaining = readiness.timeout - retry_state.seconds_since_start
            return max(0.0, min(base(retry_state), remaining))

        return wait

    @staticmethod
    def _attempt_budget(readiness: ReadinessCheck, started: float) -> ReadinessCheck:
        """
        Shrinks check_timeout to what is left of the probe timeout so that a
        hung health check cannot outlive the probe.
        """
        remaining = max(MIN_CHECK_TIMEOUT, readiness.timeout - (time.monotonic() - started))
        if remaining >= readiness.check_timeout:
            return readiness
        return readiness.model_copy(update={"check_timeout": remaining})

    def probe(self, service: ServiceDefinition, readiness: Optional[ReadinessCheck] = None) -> ReadinessResult:
        """
        Probes one service.

        :param service: The service to probe.
        :param readiness: Descriptor to use, defaults to the service's own.
        :return: The outcome with the number of attempts and elapsed time.
        """
        readiness = readiness or service.readiness
        log = logger.bind(service=service.name)
        attempts = 0
        detail = ""

        def check() -> HealthState:
            nonlocal attempts, detail
            attempts += 1
            try:
                state = self.executor.health_check(service.name, self._attempt_budget(readiness, started))
            except ExecutorError as e:
                detail = e.message
                raise
            detail = state.value
            return state

        def before_sleep(retry_state: RetryCallState) -> None:
            log.debug(
                "readiness_retry",
                attempt=retry_state.attempt_number,
                wait=round(retry_state.next_action.sleep, 3),
                last=detail,
            )

        retrying = Retrying(
            sleep=self._sleep,
            stop=(
                stop_after_attempt(readiness.max_attempts)
                | stop_after_delay(readiness.timeout)
                | self._stop_if_cancelled
            ),
            wait=self._wait_strategy(readiness),
            retry=(
                retry_if_result(lambda state: state is not HealthState.HEALTHY)
                | retry_if_exception_type((ExecutorError, ValueError))
            ),
            before_sleep=before_sleep,
            retry_error_callback=lambda rs: None if rs.outcome.failed else rs.outcome.result(),
        )

        started = time.monotonic()
        state: Optional[HealthState] = None
        if not self.cancel_event.is_set():
            try:
                state = retrying(check)
            except _ProbeCancelled:
                state = None
        elapsed = time.monotonic() - started

        if state is HealthState.HEALTHY:
            outcome = ReadinessOutcome.READY
        elif self.cancel_event.is_set():
            outcome = ReadinessOutcome.CANCELLED
        elif attempts >= readiness.max_attempts:
            outcome = ReadinessOutcome.FAILED
        else:
            outcome = ReadinessOutcome.TIMED_OUT

        result = ReadinessResult(
            service=service.name,
            attempts=attempts,
            elapsed=elapsed,
            outcome=outcome,
            detail=detail,
        )
        if result.ready:
            log.info("service_ready", attempts=attempts, elapsed=round(elapsed, 3))
        else:
            log.warning("service_not_ready", outcome=outcome.value, attempts=attempts, elapsed=round(elapsed, 3), detail=detail)
        return result
