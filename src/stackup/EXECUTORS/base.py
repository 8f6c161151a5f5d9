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
The executor interface: the external system that starts, stops and health-checks services.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

import httpx
import structlog

from ..exceptions import ExecutorError
from ..MODELS.reports import TeardownOptions
from ..MODELS.service_definition import ReadinessCheck
from ..RUNNERS.command_runner import CommandResult, CommandRunner

logger = structlog.get_logger(__name__)


class HealthState(str, Enum):
    """Low-level health signal reported by an executor."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class ServiceAck:
    """Per-service acknowledgement of a start or stop request."""

    service: str
    ok: bool
    detail: str = ""


class Executor(ABC):
    """
    Starts, stops and health-checks services of one stack.

    Subclasses wrap a concrete tool. Readiness descriptors with a ``test``
    command or an ``http`` URL are handled here; anything else falls back to
    the tool's native health signal.
    """
    kind = "abstract"
    # Start a whole tier with one call instead of one call per service
    batch_start = False

    def __init__(self,
                 runner: Optional[CommandRunner] = None,
                 http_client: Optional[httpx.Client] = None,
                 command_timeout: float = 30.0):
        """
        :param runner: Runs the tool commands.
        :param http_client: Client for HTTP readiness checks, a fresh request per check when None.
        :param command_timeout: Upper bound in seconds for read-only queries (ps, get pods).
        """
        self.runner = runner or CommandRunner(self.kind)
        self.http_client = http_client
        self.command_timeout = command_timeout

    def check_prerequisites(self) -> None:
        """
        Verifies that the tool exists and its target is reachable.

        :raises PrerequisiteError: If a required tool is missing.
        :raises ConnectivityError: If the target cannot be reached.
        """

    def prepare(self) -> None:
        """
        Brings the target itself up before any service is started.
        """

    @abstractmethod
    def start(self, service_names: List[str]) -> Dict[str, ServiceAck]:
        """Asks the target to start the given services."""

    @abstractmethod
    def health_check(self, service_name: str, readiness: Optional[ReadinessCheck] = None) -> HealthState:
        """Reports the health of one service without changing anything."""

    @abstractmethod
    def stop(self, service_names: List[str], options: TeardownOptions) -> Dict[str, ServiceAck]:
        """Stops the given services."""

    @abstractmethod
    def list_running(self) -> Set[str]:
        """Returns the names of the services currently running."""

    def cleanup(self, options: TeardownOptions) -> List[str]:
        """
        Best-effort cleanup after services were stopped.

        :return: Error messages of the cleanup steps that failed.
        """
        return []

    def describe_target(self) -> Dict[str, str]:
        return {"executor": self.kind}

    def helpful_commands(self) -> List[str]:
        return []

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    @staticmethod
    def command_argv(test: List[str]) -> Optional[List[str]]:
        """
        Converts a Docker-style health test into an argv list.

        ``["CMD", "pg_isready"]`` runs directly, ``["CMD-SHELL", "..."]`` runs
        through ``sh -c``, ``["NONE"]`` or an empty test disables the check.
        """
        if not test or test[0] == "NONE":
            return None
        if test[0] == "CMD":
            return list(test[1:]) or None
        if test[0] == "CMD-SHELL":
            script = " ".join(test[1:])
            return ["sh", "-c", script] if script else None
        return list(test)

    def exec_argv(self, service_name: str, argv: List[str]) -> List[str]:
        """
        Wraps a check command so that it runs next to the service.
        Runs on the host by default.
        """
        return argv

    def check_timeout(self, readiness: Optional[ReadinessCheck]) -> float:
        """
        Returns the per-attempt budget of a health check.
        """
        return readiness.check_timeout if readiness is not None else self.command_timeout

    def run_readiness(self,
                      service_name: str,
                      readiness: Optional[ReadinessCheck],
                      timeout: Optional[float] = None) -> Optional[HealthState]:
        """
        Runs the custom readiness check of a service, if it declares one.

        :param timeout: Seconds left for the check, the descriptor's check_timeout when None.
        :return: The check result, or None when the native health signal should be used.
        """
        if readiness is None:
            return None
        if timeout is None:
            timeout = readiness.check_timeout
        if readiness.http:
            return self.check_http(readiness.http, readiness.expected_status, timeout)

        argv = self.command_argv(readiness.test)
        if argv is None:
            return None

        try:
            result = self.runner.run(self.exec_argv(service_name, argv), timeout=timeout)
        except ExecutorError as e:
            logger.debug("readiness_command_error", service=service_name, error=str(e))
            return HealthState.UNHEALTHY
        if result.ok:
            return HealthState.HEALTHY
        logger.debug("readiness_command_failed", service=service_name, output=result.error_text)
        return HealthState.UNHEALTHY

    def check_http(self, url: str, expected_status: int = 200, timeout: float = 10.0) -> HealthState:
        """
        Probes an HTTP endpoint.

        :return: HEALTHY on the expected status, UNHEALTHY otherwise.
        """
        # InvalidURL (e.g. a non-numeric port) is not an HTTPError
        try:
            if self.http_client is not None:
                response = self.http_client.get(url, timeout=timeout)
            else:
                response = httpx.get(url, timeout=timeout)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.debug("readiness_http_error", url=url, error=str(e))
            return HealthState.UNHEALTHY

        if response.status_code == expected_status:
            return HealthState.HEALTHY
        logger.debug("readiness_http_status", url=url, status=response.status_code)
        return HealthState.UNHEALTHY

    @staticmethod
    def ack_all(service_names: Iterable[str], result: CommandResult) -> Dict[str, ServiceAck]:
        """
        Builds per-service acknowledgements from a single batched command.
        """
        detail = "" if result.ok else result.error_text
        return {name: ServiceAck(service=name, ok=result.ok, detail=detail) for name in service_names}
