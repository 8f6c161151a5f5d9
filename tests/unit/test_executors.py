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
Unit tests for the compose and kubectl executors, with scripted command output.
"""
import json
import subprocess
import time

import httpx
import pytest

from stackup.EXECUTORS.base import Executor, HealthState
from stackup.EXECUTORS.compose_executor import ComposeExecutor
from stackup.EXECUTORS.factory import create_executor
from stackup.EXECUTORS.kubectl_executor import KubectlExecutor
from stackup.exceptions import ConnectivityError, ExecutorError, PrerequisiteError
from stackup.MODELS.orchestration_config import ExecutorKind, OrchestratorConfig
from stackup.MODELS.reports import TeardownOptions
from stackup.MANAGERS.readiness_probe import ReadinessProbe
from stackup.MODELS.lifecycle_session import ReadinessOutcome
from stackup.MODELS.service_definition import ReadinessCheck, ServiceDefinition
from stackup.RUNNERS.command_runner import CommandResult, CommandRunner


class FakeRunner(CommandRunner):
    """
    Returns canned results keyed by a joined argv fragment; unmatched commands succeed.
    """

    def __init__(self, tools=("docker", "kubectl", "minikube"), responses=None):
        super().__init__("fake")
        self.tools = set(tools)
        self.responses = responses or {}
        self.commands = []
        self.timeouts = {}

    def available(self, tool):
        return tool in self.tools

    def run(self, argv, timeout=None, check=False):
        self.commands.append(list(argv))
        line = " ".join(argv)
        self.timeouts[line] = timeout
        for fragment, (code, stdout) in self.responses.items():
            if fragment in line:
                result = CommandResult(argv=list(argv), returncode=code, stdout=stdout,
                                       stderr="" if code == 0 else stdout)
                break
        else:
            result = CommandResult(argv=list(argv), returncode=0)
        if check and not result.ok:
            raise ExecutorError(f"Command failed: {line}", command=argv, returncode=result.returncode)
        return result

    def ran(self, fragment):
        return any(fragment in " ".join(cmd) for cmd in self.commands)

    def timeout_of(self, fragment):
        return next(timeout for line, timeout in self.timeouts.items() if fragment in line)


class HangingRunner(FakeRunner):
    """
    Simulates a wedged daemon: matching commands hang until their timeout expires.
    """

    def __init__(self, hang_on, **kwargs):
        super().__init__(**kwargs)
        self.hang_on = hang_on

    def run(self, argv, timeout=None, check=False):
        if self.hang_on not in " ".join(argv):
            return super().run(argv, timeout=timeout, check=check)
        self.commands.append(list(argv))
        self.timeouts[" ".join(argv)] = timeout
        time.sleep(3 if timeout is None else min(timeout, 3))
        raise ExecutorError(f"Command timed out after {timeout}s", command=argv)


class TestCommandRunner:
    """Tests for CommandRunner."""

    def test_run_captures_output(self, monkeypatch):
        """Output and return code are captured from subprocess.run."""
        def fake_run(argv, **kwargs):
            assert kwargs["shell"] is False
            return subprocess.CompletedProcess(argv, 1, stdout="", stderr="no such service")

        monkeypatch.setattr(subprocess, "run", fake_run)
        result = CommandRunner("test").run(["docker", "compose", "ps"])

        assert not result.ok
        assert result.error_text == "no such service"

    def test_missing_tool(self, monkeypatch):
        """A missing binary becomes an ExecutorError."""
        def fake_run(argv, **kwargs):
            raise FileNotFoundError(argv[0])

        monkeypatch.setattr(subprocess, "run", fake_run)
        with pytest.raises(ExecutorError, match="not installed"):
            CommandRunner("test").run(["kubectl", "version"])

    def test_timeout(self, monkeypatch):
        """A hung command becomes an ExecutorError."""
        def fake_run(argv, **kwargs):
            raise subprocess.TimeoutExpired(argv, kwargs["timeout"])

        monkeypatch.setattr(subprocess, "run", fake_run)
        with pytest.raises(ExecutorError, match="timed out"):
            CommandRunner("test").run(["sh", "-c", "sleep 60"], timeout=1)

    def test_check_raises(self, monkeypatch):
        monkeypatch.setattr(subprocess, "run",
                            lambda argv, **kwargs: subprocess.CompletedProcess(argv, 2, stdout="", stderr="boom"))
        with pytest.raises(ExecutorError) as excinfo:
            CommandRunner("test").run(["false"], check=True)
        assert excinfo.value.returncode == 2


class TestSharedHelpers:
    """Tests for the helpers on the Executor base class."""

    @pytest.mark.parametrize("test, argv", [
        (["CMD", "pg_isready", "-U", "postgres"], ["pg_isready", "-U", "postgres"]),
        (["CMD-SHELL", "redis-cli ping"], ["sh", "-c", "redis-cli ping"]),
        (["NONE"], None),
        ([], None),
    ])
    def test_command_argv(self, test, argv):
        assert Executor.command_argv(test) == argv

    def test_http_check(self):
        """HTTP checks compare the status code."""
        def handler(request):
            return httpx.Response(200 if request.url.path == "/health" else 503)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        executor = ComposeExecutor(runner=FakeRunner(), http_client=client)

        assert executor.check_http("http://localhost:3002/health") is HealthState.HEALTHY
        assert executor.check_http("http://localhost:3002/ready") is HealthState.UNHEALTHY

    def test_http_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        executor = ComposeExecutor(runner=FakeRunner(), http_client=client)
        assert executor.check_http("http://localhost:3000") is HealthState.UNHEALTHY

    def test_http_invalid_url(self):
        """A URL httpx cannot parse (here a port left uninterpolated) is unhealthy, not an error."""
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        executor = ComposeExecutor(runner=FakeRunner(), http_client=client)
        assert executor.check_http("http://localhost:abc/health") is HealthState.UNHEALTHY


class TestComposeExecutor:
    """Tests for ComposeExecutor."""

    def test_prerequisites_without_docker(self):
        executor = ComposeExecutor(runner=FakeRunner(tools=()))
        with pytest.raises(PrerequisiteError, match="Docker is not installed"):
            executor.check_prerequisites()

    def test_prerequisites_docker_not_running(self, tmp_path):
        compose_file = tmp_path / "docker-compose.yml"
        compose_file.write_text("services: {}\n")
        runner = FakeRunner(responses={"docker info": (1, "Cannot connect to the Docker daemon")})
        executor = ComposeExecutor(compose_file=str(compose_file), runner=runner)
        with pytest.raises(ConnectivityError):
            executor.check_prerequisites()

    def test_falls_back_to_standalone_compose(self):
        runner = FakeRunner(tools=("docker", "docker-compose"), responses={"docker compose version": (1, "")})
        executor = ComposeExecutor(compose_file="dev.yml", project_name="xploresg", runner=runner)
        assert executor.compose_command() == ["docker-compose", "-f", "dev.yml", "-p", "xploresg"]

    def test_start_acknowledges_each_service(self):
        runner = FakeRunner(responses={"up -d": (1, "no such image")})
        acks = ComposeExecutor(runner=runner).start(["postgres", "redis"])

        assert set(acks) == {"postgres", "redis"}
        assert not acks["postgres"].ok
        assert acks["redis"].detail == "no such image"

    def test_health_check_from_ps(self):
        entries = [
            {"Service": "postgres", "State": "running", "Health": "healthy"},
            {"Service": "redis", "State": "running", "Health": "starting"},
            {"Service": "mongodb", "State": "exited", "Health": ""},
            {"Service": "user-service", "State": "running", "Health": ""},
        ]
        stdout = "\n".join(json.dumps(entry) for entry in entries)
        executor = ComposeExecutor(runner=FakeRunner(responses={"ps --all": (0, stdout)}))

        assert executor.health_check("postgres") is HealthState.HEALTHY
        assert executor.health_check("redis") is HealthState.UNHEALTHY
        assert executor.health_check("mongodb") is HealthState.UNHEALTHY
        assert executor.health_check("user-service") is HealthState.HEALTHY
        assert executor.health_check("frontend-service") is HealthState.UNKNOWN

    def test_custom_check_runs_inside_container(self):
        stdout = json.dumps([{"Service": "postgres", "State": "running", "Health": ""}])
        runner = FakeRunner(responses={"ps --all": (0, stdout), "pg_isready": (1, "no response")})
        executor = ComposeExecutor(runner=runner)
        readiness = ReadinessCheck(test=["CMD", "pg_isready", "-U", "postgres"])

        assert executor.health_check("postgres", readiness) is HealthState.UNHEALTHY
        assert runner.ran("exec -T postgres pg_isready -U postgres")

    def test_list_running(self):
        runner = FakeRunner(responses={"ps --services": (0, "postgres\nredis\n")})
        assert ComposeExecutor(runner=runner, command_timeout=7).list_running() == {"postgres", "redis"}
        assert runner.timeout_of("ps --services") == 7

    def test_health_check_bounded_by_check_timeout(self):
        stdout = json.dumps([{"Service": "postgres", "State": "running", "Health": ""}])
        runner = FakeRunner(responses={"ps --all": (0, stdout)})
        executor = ComposeExecutor(runner=runner)

        executor.health_check("postgres", ReadinessCheck(check_timeout=4, test=["CMD", "pg_isready"]))

        assert runner.timeout_of("ps --all") == 4
        assert 0 < runner.timeout_of("pg_isready") <= 4

    def test_probe_not_blocked_by_hung_daemon(self):
        """A hanging ps is cut off at the probe timeout instead of blocking the probe."""
        runner = HangingRunner(hang_on="ps --all")
        service = ServiceDefinition(name="postgres", readiness=ReadinessCheck(interval=0.1, timeout=0.5))

        started = time.monotonic()
        result = ReadinessProbe(ComposeExecutor(runner=runner)).probe(service)
        elapsed = time.monotonic() - started

        assert elapsed < 0.5 + 0.1 + 0.4
        assert result.outcome is ReadinessOutcome.TIMED_OUT
        assert runner.timeout_of("ps --all") <= 0.5

    def test_tier_started_in_one_call(self):
        assert ComposeExecutor.batch_start

    def test_list_running_unreachable(self):
        runner = FakeRunner(responses={"ps --services": (1, "Cannot connect to the Docker daemon")})
        with pytest.raises(ConnectivityError):
            ComposeExecutor(runner=runner).list_running()

    def test_stop_and_cleanup_with_volumes(self):
        runner = FakeRunner()
        executor = ComposeExecutor(runner=runner)
        options = TeardownOptions(remove_volumes=True, prune_images=True)

        acks = executor.stop(["frontend-service"], options)
        errors = executor.cleanup(options)

        assert acks["frontend-service"].ok
        assert errors == []
        assert runner.ran("rm --stop --force --volumes frontend-service")
        assert runner.ran("down --volumes --remove-orphans")
        assert runner.ran("docker image prune -f")


class TestKubectlExecutor:
    """Tests for KubectlExecutor."""

    def pods(self, *pods):
        items = []
        for name, phase, ready in pods:
            items.append({
                "metadata": {"labels": {"app.kubernetes.io/name": name}},
                "status": {"phase": phase, "conditions": [{"type": "Ready", "status": "True" if ready else "False"}]},
            })
        return json.dumps({"items": items})

    def test_context_and_namespace(self):
        executor = KubectlExecutor(context="minikube", namespace="xploresg", runner=FakeRunner())
        assert executor.kubectl("get", "pods") == [
            "kubectl", "--context", "minikube", "-n", "xploresg", "get", "pods",
        ]

    def test_service_namespaces(self):
        """Services with their own namespace are started, checked and stopped there."""
        services = [
            ServiceDefinition(name="prometheus", namespace="monitoring"),
            ServiceDefinition(name="argocd-server", namespace="argocd", manifests=["install.yaml"]),
            ServiceDefinition(name="user-service"),
        ]
        runner = FakeRunner()
        executor = KubectlExecutor(services=services, namespace="exploresg", runner=runner)

        executor.start(["prometheus", "argocd-server", "user-service"])
        executor.stop(["prometheus"], TeardownOptions())

        assert executor.namespaces() == ["exploresg", "monitoring", "argocd"]
        assert runner.ran("-n monitoring scale deployment/prometheus --replicas=1")
        assert runner.ran("-n argocd apply -f install.yaml")
        assert runner.ran("-n exploresg scale deployment/user-service --replicas=1")
        assert runner.ran("-n monitoring scale deployment/prometheus --replicas=0")
        assert executor.exec_argv("prometheus", ["true"])[:3] == ["kubectl", "-n", "monitoring"]

    def test_prepare_creates_missing_namespaces(self):
        services = [ServiceDefinition(name="prometheus", namespace="monitoring")]
        runner = FakeRunner(responses={"get namespace monitoring": (1, "NotFound")})
        KubectlExecutor(services=services, namespace="exploresg", runner=runner).prepare()

        assert runner.ran("create namespace monitoring")
        assert not runner.ran("create namespace exploresg")

    def test_namespace_creation_refused(self):
        services = [ServiceDefinition(name="prometheus", namespace="monitoring")]
        runner = FakeRunner(responses={"namespace monitoring": (1, "forbidden")})
        with pytest.raises(ConnectivityError, match="monitoring"):
            KubectlExecutor(services=services, runner=runner).prepare()

    def test_list_running_across_namespaces(self):
        services = [
            ServiceDefinition(name="prometheus", namespace="monitoring"),
            ServiceDefinition(name="user-service"),
        ]
        runner = FakeRunner(responses={
            "-n monitoring get pods": (0, self.pods(("prometheus", "Running", True))),
            "-n exploresg get pods": (0, self.pods(("user-service", "Running", True))),
        })
        executor = KubectlExecutor(services=services, namespace="exploresg", runner=runner, command_timeout=5)

        assert executor.list_running() == {"prometheus", "user-service"}
        assert runner.timeout_of("-n monitoring get pods") == 5

    def test_prerequisites_cluster_unreachable(self):
        runner = FakeRunner(responses={"cluster-info": (1, "connection refused")})
        with pytest.raises(ConnectivityError):
            KubectlExecutor(runner=runner).check_prerequisites()

    def test_prerequisites_without_kubectl(self):
        with pytest.raises(PrerequisiteError):
            KubectlExecutor(runner=FakeRunner(tools=())).check_prerequisites()

    def test_prepare_starts_minikube(self):
        runner = FakeRunner(responses={"minikube status": (1, "Stopped")})
        executor = KubectlExecutor(minikube_autostart=True, minikube_addons=["ingress"], runner=runner)
        executor.check_prerequisites()
        executor.prepare()

        assert runner.ran("minikube start --driver=docker")
        assert runner.ran("minikube addons enable ingress")

    def test_start_applies_manifests_or_scales(self):
        services = [
            ServiceDefinition(name="argocd-server", manifests=["argocd/install.yaml"]),
            ServiceDefinition(name="user-service"),
        ]
        runner = FakeRunner()
        acks = KubectlExecutor(services=services, runner=runner).start(["argocd-server", "user-service"])

        assert all(ack.ok for ack in acks.values())
        assert runner.ran("apply -f argocd/install.yaml")
        assert runner.ran("scale deployment/user-service --replicas=1")

    def test_health_check_uses_pod_readiness(self):
        runner = FakeRunner(responses={
            "app.kubernetes.io/name=postgres": (0, self.pods(("postgres", "Running", True))),
            "app.kubernetes.io/name=redis": (0, self.pods(("redis", "Running", False))),
            "app.kubernetes.io/name=mongodb": (0, self.pods()),
        })
        executor = KubectlExecutor(runner=runner)

        assert executor.health_check("postgres") is HealthState.HEALTHY
        assert executor.health_check("redis") is HealthState.UNHEALTHY
        assert executor.health_check("mongodb") is HealthState.UNKNOWN

    def test_list_running_matches_selectors(self):
        services = [ServiceDefinition(name="argocd-server", selector="app.kubernetes.io/name=argocd-server")]
        stdout = self.pods(("argocd-server", "Running", True), ("postgres", "Running", True), ("redis", "Pending", False))
        runner = FakeRunner(responses={"get pods -o json": (0, stdout)})

        assert KubectlExecutor(services=services, runner=runner).list_running() == {"argocd-server", "postgres"}

    def test_stop_with_volumes_and_cluster(self):
        services = [ServiceDefinition(name="argocd-server", manifests=["a.yaml", "b.yaml"])]
        runner = FakeRunner()
        executor = KubectlExecutor(services=services, runner=runner)
        options = TeardownOptions(remove_volumes=True, stop_cluster=True)

        executor.stop(["argocd-server"], options)
        executor.cleanup(options)

        deletes = [" ".join(cmd) for cmd in runner.commands if "delete" in cmd and "-f" in cmd]
        assert "b.yaml" in deletes[0] and "a.yaml" in deletes[1]
        assert runner.ran("delete pvc -l app.kubernetes.io/name=argocd-server")
        assert runner.ran("minikube stop")


def test_factory_selects_executor():
    assert isinstance(create_executor(OrchestratorConfig(executor=ExecutorKind.KUBECTL)), KubectlExecutor)
    assert isinstance(create_executor(OrchestratorConfig(executor=ExecutorKind.COMPOSE)), ComposeExecutor)
