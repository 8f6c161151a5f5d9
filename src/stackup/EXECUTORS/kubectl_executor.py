"""
Executor backed by kubectl, with optional minikube bring-up.
"""
import json
import time
from typing import Any, Dict, List, Optional, Sequence, Set

import httpx
import structlog

from .base import Executor, HealthState, ServiceAck
from ..exceptions import ConnectivityError, ExecutorError, PrerequisiteError
from ..MODELS.reports import TeardownOptions
from ..MODELS.service_definition import ReadinessCheck, ServiceDefinition
from ..RUNNERS.command_runner import CommandRunner

logger = structlog.get_logger(__name__)


def _parse_selector(selector: str) -> Dict[str, str]:
    labels = {}
    for part in selector.split(','):
        key, _, value = part.strip().partition('=')
        if key:
            labels[key] = value
    return labels


def _pod_ready(pod: Dict[str, Any]) -> bool:
    for condition in pod.get("status", {}).get("conditions", []) or []:
        if condition.get("type") == "Ready":
            return condition.get("status") == "True"
    return False


class KubectlExecutor(Executor):
    """
    Applies and scales workloads with kubectl.

    A service with ``manifests`` is started by applying them and stopped by
    deleting them; otherwise its deployment is scaled up or down. Pods are
    matched with the service's label selector. Each service lives in its own
    ``namespace`` when it declares one, in the executor's namespace otherwise.
    """
    kind = "kubectl"

    def __init__(self,
                 services: Sequence[ServiceDefinition] = (),
                 context: Optional[str] = None,
                 namespace: str = "default",
                 minikube_autostart: bool = False,
                 minikube_addons: Sequence[str] = ("ingress", "metrics-server"),
                 runner: Optional[CommandRunner] = None,
                 http_client: Optional[httpx.Client] = None,
                 command_timeout: float = 30.0):
        super().__init__(runner=runner, http_client=http_client, command_timeout=command_timeout)
        self.services = {svc.name: svc for svc in services}
        self.context = context
        self.namespace = namespace
        self.minikube_autostart = minikube_autostart
        self.minikube_addons = list(minikube_addons)

    def kubectl(self, *args: str, namespace: Optional[str] = None) -> List[str]:
        cmd = ["kubectl"]
        if self.context:
            cmd += ["--context", self.context]
        return cmd + ["-n", namespace or self.namespace] + list(args)

    def _service(self, name: str) -> ServiceDefinition:
        return self.services.get(name) or ServiceDefinition(name=name)

    def namespace_of(self, name: str) -> str:
        return self._service(name).namespace or self.namespace

    def namespaces(self) -> List[str]:
        """
        Returns every namespace the known services live in, the executor's own first.
        """
        found = [self.namespace]
        for name in self.services:
            namespace = self.namespace_of(name)
            if namespace not in found:
                found.append(namespace)
        return found

    def _cluster_reachable(self) -> bool:
        return self.runner.run(self.kubectl("cluster-info"), timeout=self.command_timeout).ok

    def check_prerequisites(self) -> None:
        if not self.runner.available("kubectl"):
            raise PrerequisiteError("kubectl is not installed or not in PATH")
        if self.minikube_autostart:
            if not self.runner.available("minikube"):
                raise PrerequisiteError("minikube is not installed. Please install minikube first.")
            # Reachability is checked after minikube has been started
            return
        if not self._cluster_reachable():
            raise ConnectivityError(
                "Cannot connect to Kubernetes cluster",
                {"context": self.context or "current"},
            )
        logger.info("prerequisites_ok", executor=self.kind, context=self.context or "current")

    def prepare(self) -> None:
        if self.minikube_autostart:
            self._start_minikube()
        for namespace in self.namespaces():
            self.ensure_namespace(namespace)

    def ensure_namespace(self, namespace: str) -> None:
        """
        Creates a namespace unless it already exists.

        :raises ConnectivityError: If the cluster refuses to create it.
        """
        if self.runner.run(self.kubectl("get", "namespace", namespace), timeout=self.command_timeout).ok:
            return
        result = self.runner.run(self.kubectl("create", "namespace", namespace), timeout=self.command_timeout)
        if not result.ok:
            raise ConnectivityError(f"Cannot create namespace {namespace}: {result.error_text}")
        logger.info("namespace_created", namespace=namespace)

    def _start_minikube(self) -> None:
        if self.runner.run(["minikube", "status"], timeout=self.command_timeout).ok:
            logger.info("minikube_running")
        else:
            logger.info("minikube_starting")
            try:
                self.runner.run(
                    ["minikube", "start", "--driver=docker", "--cpus=4", "--memory=4096"],
                    check=True,
                )
            except ExecutorError as e:
                raise ConnectivityError(f"Failed to start minikube: {e.message}") from e
        for addon in self.minikube_addons:
            result = self.runner.run(["minikube", "addons", "enable", addon])
            if not result.ok:
                logger.warning("minikube_addon_failed", addon=addon, error=result.error_text)
        if not self._cluster_reachable():
            raise ConnectivityError("Cannot connect to Kubernetes cluster after starting minikube")

    def start(self, service_names: List[str]) -> Dict[str, ServiceAck]:
        acks = {}
        for name in service_names:
            svc = self._service(name)
            ns = svc.namespace
            if svc.manifests:
                commands = [self.kubectl("apply", "-f", manifest, namespace=ns) for manifest in svc.manifests]
            else:
                commands = [self.kubectl("scale", f"deployment/{name}", "--replicas=1", namespace=ns)]
            acks[name] = self._run_all(name, commands)
        return acks

    def _run_all(self, name: str, commands: List[List[str]]) -> ServiceAck:
        for argv in commands:
            result = self.runner.run(argv)
            if not result.ok:
                return ServiceAck(service=name, ok=False, detail=result.error_text)
        return ServiceAck(service=name, ok=True)

    def _pods(self,
              selector: Optional[str] = None,
              namespace: Optional[str] = None,
              timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        args = ["get", "pods", "-o", "json"]
        if selector:
            args[2:2] = ["-l", selector]
        timeout = self.command_timeout if timeout is None else timeout
        result = self.runner.run(self.kubectl(*args, namespace=namespace), timeout=timeout)
        if not result.ok:
            raise ExecutorError(f"Cannot list pods: {result.error_text}", command=result.argv)
        return json.loads(result.stdout or "{}").get("items", [])

    def health_check(self, service_name: str, readiness: Optional[ReadinessCheck] = None) -> HealthState:
        svc = self._service(service_name)
        budget = self.check_timeout(readiness)
        started = time.monotonic()
        pods = [
            pod for pod in self._pods(svc.pod_selector, self.namespace_of(service_name), timeout=budget)
            if pod.get("status", {}).get("phase") != "Succeeded"
        ]
        if not pods:
            return HealthState.UNKNOWN
        if not all(_pod_ready(pod) for pod in pods):
            return HealthState.UNHEALTHY

        remaining = max(0.1, budget - (time.monotonic() - started))
        custom = self.run_readiness(service_name, readiness, timeout=remaining)
        return custom if custom is not None else HealthState.HEALTHY

    def exec_argv(self, service_name: str, argv: List[str]) -> List[str]:
        namespace = self.namespace_of(service_name)
        return self.kubectl("exec", f"deploy/{service_name}", "--", namespace=namespace) + argv

    def stop(self, service_names: List[str], options: TeardownOptions) -> Dict[str, ServiceAck]:
        acks = {}
        for name in service_names:
            svc = self._service(name)
            ns = svc.namespace
            if svc.manifests:
                commands = [
                    self.kubectl("delete", "-f", manifest, "--ignore-not-found=true", namespace=ns)
                    for manifest in reversed(svc.manifests)
                ]
            else:
                commands = [self.kubectl("scale", f"deployment/{name}", "--replicas=0", namespace=ns)]
            if options.remove_volumes:
                commands.append(
                    self.kubectl("delete", "pvc", "-l", svc.pod_selector, "--ignore-not-found=true", namespace=ns)
                )
            acks[name] = self._run_all(name, commands)
        return acks

    def list_running(self) -> Set[str]:
        running = set()
        for namespace in self.namespaces():
            try:
                pods = self._pods(namespace=namespace)
            except ExecutorError as e:
                raise ConnectivityError(str(e)) from e
            running.update(self._running_in(namespace, pods))
        return running

    def _running_in(self, namespace: str, pods: List[Dict[str, Any]]) -> Set[str]:
        selectors = {
            name: _parse_selector(svc.pod_selector)
            for name, svc in self.services.items()
            if self.namespace_of(name) == namespace
        }
        running = set()
        for pod in pods:
            if pod.get("status", {}).get("phase") != "Running":
                continue
            labels = pod.get("metadata", {}).get("labels", {}) or {}
            matched = [
                name for name, selector in selectors.items()
                if selector and all(labels.get(k) == v for k, v in selector.items())
            ]
            if matched:
                running.update(matched)
            elif "app.kubernetes.io/name" in labels:
                running.add(labels["app.kubernetes.io/name"])
        return running

    def cleanup(self, options: TeardownOptions) -> List[str]:
        errors = []
        if options.prune_images:
            if self.runner.available("docker"):
                result = self.runner.run(["docker", "system", "prune", "-f"])
                if not result.ok:
                    errors.append(f"docker system prune: {result.error_text}")
            else:
                logger.info("prune_images_skipped", reason="docker not installed")
        if options.stop_cluster:
            if self.runner.available("minikube"):
                result = self.runner.run(["minikube", "stop"])
                if not result.ok:
                    errors.append(f"minikube stop: {result.error_text}")
            else:
                logger.info("stop_cluster_skipped", reason="minikube not installed")
        return errors

    def describe_target(self) -> Dict[str, str]:
        target = {"executor": self.kind, "namespace": self.namespace}
        context = self.context
        if not context:
            result = self.runner.run(["kubectl", "config", "current-context"], timeout=self.command_timeout)
            context = result.stdout.strip() if result.ok else "unknown"
        target["context"] = context
        if self.runner.available("minikube"):
            result = self.runner.run(["minikube", "ip"], timeout=self.command_timeout)
            if result.ok and result.stdout.strip():
                target["ip"] = result.stdout.strip()
        return target

    def helpful_commands(self) -> List[str]:
        ns = self.namespace
        return [
            f"View pods:     kubectl get pods -n {ns}",
            f"View logs:     kubectl logs -f deployment/<service-name> -n {ns}",
            f"Port forward:  kubectl port-forward service/<service-name> <local-port>:<service-port> -n {ns}",
            f"Shell into:    kubectl exec -it deployment/<service-name> -n {ns} -- /bin/bash",
            "Dashboard:     minikube dashboard",
        ]
