"""
Executor backed by docker compose.
"""
import json
import os
import time
from typing import Any, Dict, List, Optional, Set

import httpx
import structlog

from .base import Executor, HealthState, ServiceAck
from ..exceptions import ConnectivityError, ExecutorError, PrerequisiteError
from ..MODELS.reports import TeardownOptions
from ..MODELS.service_definition import ReadinessCheck
from ..RUNNERS.command_runner import CommandResult, CommandRunner

logger = structlog.get_logger(__name__)


class ComposeExecutor(Executor):
    """
    Drives services of one compose project with ``docker compose``,
    falling back to the standalone ``docker-compose`` binary.
    """
    kind = "compose"
    # Concurrent `compose up` calls race on creating the project network
    batch_start = True

    def __init__(self,
                 compose_file: str = "docker-compose.yml",
                 project_name: Optional[str] = None,
                 runner: Optional[CommandRunner] = None,
                 http_client: Optional[httpx.Client] = None,
                 command_timeout: float = 30.0):
        super().__init__(runner=runner, http_client=http_client, command_timeout=command_timeout)
        self.compose_file = compose_file
        self.project_name = project_name
        self._compose_cmd: Optional[List[str]] = None

    def compose_command(self) -> List[str]:
        """
        Returns the compose invocation prefix, detecting the flavour once.

        :raises PrerequisiteError: If neither compose flavour is available.
        """
        if self._compose_cmd is None:
            version = ["docker", "compose", "version"]
            if self.runner.available("docker") and self.runner.run(version, timeout=self.command_timeout).ok:
                base = ["docker", "compose"]
            elif self.runner.available("docker-compose"):
                base = ["docker-compose"]
            else:
                raise PrerequisiteError(
                    "Docker Compose is not available. Please ensure Docker Desktop is running."
                )
            self._compose_cmd = base
        cmd = self._compose_cmd + ["-f", self.compose_file]
        if self.project_name:
            cmd += ["-p", self.project_name]
        return cmd

    def _compose(self, *args: str, timeout: Optional[float] = None) -> CommandResult:
        return self.runner.run(self.compose_command() + list(args), timeout=timeout)

    def check_prerequisites(self) -> None:
        if not self.runner.available("docker"):
            raise PrerequisiteError("Docker is not installed. Please install Docker Desktop.")
        self.compose_command()
        if not os.path.exists(self.compose_file):
            raise PrerequisiteError(f"Compose file {self.compose_file} not found")
        if not self.runner.run(["docker", "info"], timeout=self.command_timeout).ok:
            raise ConnectivityError("Docker is not running. Please start Docker Desktop.")
        logger.info("prerequisites_ok", executor=self.kind, compose=" ".join(self._compose_cmd))

    def start(self, service_names: List[str]) -> Dict[str, ServiceAck]:
        result = self._compose("up", "-d", *service_names)
        if not result.ok:
            logger.warning("compose_up_failed", services=service_names, error=result.error_text)
        return self.ack_all(service_names, result)

    def container_states(self,
                         service_names: Optional[List[str]] = None,
                         timeout: Optional[float] = None) -> Dict[str, Dict[str, Any]]:
        """
        Reads container state and health per service from ``compose ps``.

        :param timeout: Seconds before the query is abandoned, command_timeout when None.
        :raises ExecutorError: If compose cannot list the containers in time.
        """
        timeout = self.command_timeout if timeout is None else timeout
        result = self._compose("ps", "--all", "--format", "json", *(service_names or []), timeout=timeout)
        if not result.ok:
            raise ExecutorError(f"Cannot list containers: {result.error_text}", command=result.argv)

        text = result.stdout.strip()
        if not text:
            return {}
        # Older compose releases print one JSON array, newer ones JSON lines
        if text.startswith("["):
            entries = json.loads(text)
        else:
            entries = [json.loads(line) for line in text.splitlines() if line.strip()]
        return {entry.get("Service", entry.get("Name", "")): entry for entry in entries}

    def health_check(self, service_name: str, readiness: Optional[ReadinessCheck] = None) -> HealthState:
        budget = self.check_timeout(readiness)
        started = time.monotonic()
        entry = self.container_states([service_name], timeout=budget).get(service_name)
        if entry is None:
            return HealthState.UNKNOWN
        if str(entry.get("State", "")).lower() != "running":
            return HealthState.UNHEALTHY

        remaining = max(0.1, budget - (time.monotonic() - started))
        custom = self.run_readiness(service_name, readiness, timeout=remaining)
        if custom is not None:
            return custom

        health = str(entry.get("Health", "")).lower()
        if health in ("", "healthy"):
            return HealthState.HEALTHY
        return HealthState.UNHEALTHY

    def exec_argv(self, service_name: str, argv: List[str]) -> List[str]:
        return self.compose_command() + ["exec", "-T", service_name] + argv

    def stop(self, service_names: List[str], options: TeardownOptions) -> Dict[str, ServiceAck]:
        args = ["rm", "--stop", "--force"]
        if options.remove_volumes:
            args.append("--volumes")
        return self.ack_all(service_names, self._compose(*args, *service_names))

    def list_running(self) -> Set[str]:
        try:
            result = self._compose("ps", "--services", "--filter", "status=running", timeout=self.command_timeout)
        except ExecutorError as e:
            raise ConnectivityError(str(e)) from e
        if not result.ok:
            raise ConnectivityError(f"Cannot reach docker: {result.error_text}")
        return {line.strip() for line in result.stdout.splitlines() if line.strip()}

    def cleanup(self, options: TeardownOptions) -> List[str]:
        errors = []
        if options.remove_volumes:
            result = self._compose("down", "--volumes", "--remove-orphans")
            if not result.ok:
                errors.append(f"compose down --volumes: {result.error_text}")
        if options.prune_images:
            result = self.runner.run(["docker", "image", "prune", "-f"])
            if not result.ok:
                errors.append(f"docker image prune: {result.error_text}")
        if options.stop_cluster:
            logger.info("stop_cluster_ignored", executor=self.kind)
        return errors

    def describe_target(self) -> Dict[str, str]:
        target = {"executor": self.kind, "file": self.compose_file}
        if self.project_name:
            target["project"] = self.project_name
        return target

    def helpful_commands(self) -> List[str]:
        prefix = "docker compose -f " + self.compose_file
        return [
            f"View logs:  {prefix} logs -f [service-name]",
            f"Restart:    {prefix} restart [service-name]",
            f"Rebuild:    {prefix} up --build [service-name]",
            "Stop all:   stackup down",
        ]
