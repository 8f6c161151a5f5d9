"""
Shared fixtures: a scripted in-memory executor and service builders.
"""
import threading
from collections import Counter

import pytest

from stackup.EXECUTORS.base import Executor, HealthState, ServiceAck
from stackup.exceptions import ConnectivityError
from stackup.MODELS.service_definition import ReadinessCheck, ServiceDefinition
from stackup.RUNNERS.command_runner import CommandRunner
from stackup.UTILS.log_setup import configure_logging

MUTATING_CALLS = ("start", "stop", "cleanup", "prepare")


class ScriptedExecutor(Executor):
    """
    Executor double driven by per-service health scripts.

    A script is a HealthState, or a list of HealthStates / exceptions consumed
    one per health check (the last entry repeats). Services without a script
    are healthy.
    """
    kind = "scripted"

    def __init__(self, health=None, start_failures=(), stop_failures=(), running=(),
                 unreachable=False, prerequisite_error=None, cleanup_errors=()):
        super().__init__(runner=CommandRunner("scripted"))
        self.health = {name: list(s) if isinstance(s, list) else s for name, s in (health or {}).items()}
        self.start_failures = set(start_failures)
        self.stop_failures = set(stop_failures)
        self.running = set(running)
        self.unreachable = unreachable
        self.prerequisite_error = prerequisite_error
        self.cleanup_errors = list(cleanup_errors)
        self.calls = []
        self.start_order = []
        self.stop_batches = []
        self.health_calls = Counter()
        self.on_start = None
        self._lock = threading.Lock()

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)

    def check_prerequisites(self):
        self._record("check_prerequisites")
        if self.prerequisite_error is not None:
            raise self.prerequisite_error

    def start(self, service_names):
        self._record("start", tuple(service_names))
        acks = {}
        with self._lock:
            self.start_order.extend(service_names)
            for name in service_names:
                ok = name not in self.start_failures
                if ok:
                    self.running.add(name)
                acks[name] = ServiceAck(service=name, ok=ok, detail="" if ok else "start failed")
        if self.on_start is not None:
            self.on_start(service_names)
        return acks

    def health_check(self, service_name, readiness=None):
        self._record("health_check", service_name)
        with self._lock:
            self.health_calls[service_name] += 1
            script = self.health.get(service_name, HealthState.HEALTHY)
            if isinstance(script, list):
                step = script.pop(0) if len(script) > 1 else script[0]
            else:
                step = script
        if isinstance(step, Exception):
            raise step
        return step

    def stop(self, service_names, options):
        self._record("stop", tuple(service_names))
        acks = {}
        with self._lock:
            self.stop_batches.append(list(service_names))
            for name in service_names:
                ok = name not in self.stop_failures
                if ok:
                    self.running.discard(name)
                acks[name] = ServiceAck(service=name, ok=ok, detail="" if ok else "stop failed")
        return acks

    def list_running(self):
        self._record("list_running")
        if self.unreachable:
            raise ConnectivityError("executor unreachable")
        with self._lock:
            return set(self.running)

    def cleanup(self, options):
        self._record("cleanup")
        return list(self.cleanup_errors)

    def helpful_commands(self):
        return ["View logs:  scripted logs <service-name>"]

    @property
    def mutating_calls(self):
        return [call for call in self.calls if call[0] in MUTATING_CALLS]


def fast_readiness(**overrides):
    values = dict(interval=0.001, timeout=5.0, max_attempts=10, check_timeout=1.0)
    values.update(overrides)
    return ReadinessCheck(**values)


@pytest.fixture(autouse=True)
def _logging():
    configure_logging("WARNING")


@pytest.fixture
def make_executor():
    return ScriptedExecutor


@pytest.fixture
def make_service():
    """
    Builds a ServiceDefinition with a millisecond readiness budget.
    """
    def build(name, tier=None, depends_on=(), endpoints=(), credentials=None, stack="apps", **readiness):
        return ServiceDefinition(
            name=name,
            tier=tier,
            depends_on=list(depends_on),
            endpoints=list(endpoints),
            credentials=credentials,
            stack=stack,
            readiness=fast_readiness(**readiness),
        )
    return build


@pytest.fixture
def xploresg_services(make_service):
    """The database/backend/gateway/frontend layout of the sample stack."""
    return [
        make_service("postgres", endpoints=["localhost:5432"], credentials="postgres/postgres123"),
        make_service("redis", endpoints=["localhost:6379"]),
        make_service("user-service", depends_on=["postgres", "redis"], endpoints=["http://localhost:3002"]),
        make_service("rental-service", depends_on=["postgres"], endpoints=["http://localhost:3001"]),
        make_service("api-gateway", depends_on=["user-service", "rental-service"],
                     endpoints=["http://localhost:3009"]),
        make_service("frontend-service", depends_on=["api-gateway"], endpoints=["http://localhost:3000"]),
    ]
