"""
Settings for an orchestration run.

Values come from ``STACKUP_*`` environment variables (and a ``.env`` file),
and are overridden by CLI options. ``KUBECTL_CONTEXT`` is honoured for the
kubectl context, as the deployment scripts did.
"""
from enum import Enum
from typing import List, Literal, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ExecutorKind(str, Enum):
    COMPOSE = "compose"
    KUBECTL = "kubectl"


class GatingPolicy(str, Enum):
    """
    How a tier's readiness results gate the next tier.

    STRICT aborts on the first tier with a service that is not ready.
    OPTIMISTIC logs the failure and keeps going.
    """
    STRICT = "strict"
    OPTIMISTIC = "optimistic"


class OrchestratorConfig(BaseSettings):
    """Run-wide settings threaded through every component."""

    model_config = SettingsConfigDict(
        env_prefix="STACKUP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Catalog
    # -------------------------------------------------------------------------
    catalog_file: str = Field(default="stackup.yml", description="Service catalog path")
    infer_tiers: bool = Field(
        default=True,
        description="Fall back to the naming heuristic for services without a tier",
    )
    env_file: str = Field(default=".env", description="Environment file used for interpolation")
    env_template: str = Field(default=".env.example", description="Template copied to env_file")

    # -------------------------------------------------------------------------
    # Executor
    # -------------------------------------------------------------------------
    executor: ExecutorKind = Field(default=ExecutorKind.COMPOSE)
    compose_file: str = Field(default="docker-compose.yml")
    project_name: Optional[str] = Field(default=None)
    kubectl_context: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("kubectl_context", "KUBECTL_CONTEXT", "STACKUP_KUBECTL_CONTEXT"),
        description="kubectl context; the current context when unset",
    )
    namespace: str = Field(default="default", description="Namespace of services that do not name their own")
    minikube_autostart: bool = Field(default=False)
    minikube_addons: List[str] = Field(default_factory=lambda: ["ingress", "metrics-server"])
    command_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds before a read-only executor query (ps, get pods) is abandoned",
    )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    concurrency: int = Field(default=4, ge=1, description="Parallel start/probe workers per tier")
    gating: GatingPolicy = Field(default=GatingPolicy.STRICT)
    wait_slice: float = Field(
        default=0.5,
        gt=0,
        description="Seconds between checks of in-flight tier work by the control thread",
    )

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    log_format: Literal["console", "json"] = Field(default="console")
