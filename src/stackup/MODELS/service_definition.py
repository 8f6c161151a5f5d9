"""
Models for defining services, their tiers, and readiness checks.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, Field, field_validator, model_validator
from enum import Enum


class TierName(str, Enum):
    """
    Startup tiers, in the order they are brought up.
    """
    DATABASE = "database"
    BACKEND = "backend"
    GATEWAY = "gateway"
    FRONTEND = "frontend"

    @classmethod
    def ordered(cls) -> List["TierName"]:
        return [cls.DATABASE, cls.BACKEND, cls.GATEWAY, cls.FRONTEND]

    @property
    def rank(self) -> int:
        return TierName.ordered().index(self)


class StackGroup(str, Enum):
    """
    Deployment groups that can be brought up on their own.
    """
    APPS = "apps"
    MONITORING = "monitoring"
    GITOPS = "gitops"


class BackoffStrategy(str, Enum):
    """
    Delay strategy between readiness attempts.
    """
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class ReadinessCheck(BaseModel):
    """
    Describes how to decide that a service is usable by its dependents.

    With neither ``test`` nor ``http`` set, the executor's own health signal
    (container health, pod Ready condition) is used.
    """
    test: List[str] = []
    http: Optional[str] = None
    expected_status: int = 200
    timeout: float = 300.0
    interval: float = 3.0
    max_attempts: int = 100
    backoff: BackoffStrategy = BackoffStrategy.FIXED
    max_interval: float = 30.0
    check_timeout: float = 10.0

    @field_validator("timeout", "interval", "max_interval", "check_timeout")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("durations must not be negative")
        return value

    @field_validator("max_attempts")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_attempts must be at least 1")
        return value


class ServiceDefinition(BaseModel):
    """
    A single service of the stack.
    """
    name: str
    tier: Optional[TierName] = None
    depends_on: List[str] = []
    readiness: ReadinessCheck = Field(default_factory=ReadinessCheck)
    endpoints: List[str] = []
    credentials: Optional[str] = None
    stack: StackGroup = StackGroup.APPS

    # Kubernetes
    manifests: List[str] = []
    selector: Optional[str] = None
    namespace: Optional[str] = None

    # Metadata
    labels: Dict[str, str] = {}

    @model_validator(mode="after")
    def _no_self_dependency(self) -> "ServiceDefinition":
        if self.name in self.depends_on:
            raise ValueError(f"service {self.name} depends on itself")
        return self

    @property
    def pod_selector(self) -> str:
        return self.selector or f"app.kubernetes.io/name={self.name}"
