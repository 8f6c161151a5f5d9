"""
Builds the executor selected by the settings.
"""
from typing import Sequence

from .base import Executor
from .compose_executor import ComposeExecutor
from .kubectl_executor import KubectlExecutor
from ..MODELS.orchestration_config import ExecutorKind, OrchestratorConfig
from ..MODELS.service_definition import ServiceDefinition


def create_executor(config: OrchestratorConfig, services: Sequence[ServiceDefinition] = ()) -> Executor:
    if config.executor is ExecutorKind.KUBECTL:
        return KubectlExecutor(
            services=services,
            context=config.kubectl_context,
            namespace=config.namespace,
            minikube_autostart=config.minikube_autostart,
            minikube_addons=config.minikube_addons,
            command_timeout=config.command_timeout,
        )
    return ComposeExecutor(
        compose_file=config.compose_file,
        project_name=config.project_name,
        command_timeout=config.command_timeout,
    )
