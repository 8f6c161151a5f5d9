"""
Exception hierarchy for stackup.

Errors raised before any service is touched (prerequisites, connectivity,
catalog) are fatal for a run. Readiness and teardown failures are collected
and reported instead of crashing the process.
"""
from typing import Any, Dict, Optional


class StackupError(Exception):
    """Base exception for all stackup errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class PrerequisiteError(StackupError):
    """A required tool or context is unavailable."""


class ConnectivityError(StackupError):
    """The executor (container runtime or cluster) cannot be reached."""


class CatalogError(StackupError):
    """The service catalog is malformed or references unknown services."""


class ClassificationError(StackupError):
    """A service cannot be assigned to a tier, or tiers are inconsistent."""


class ExecutorError(StackupError):
    """An executor command failed."""

    def __init__(
        self,
        message: str,
        command: Optional[list] = None,
        returncode: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.command = command or []
        self.returncode = returncode
        super().__init__(message, details)


class ReadinessFailure(StackupError):
    """A service did not become ready within its probe budget."""

    def __init__(self, service: str, outcome: str, attempts: int):
        self.service = service
        self.outcome = outcome
        self.attempts = attempts
        super().__init__(
            f"Service {service} {outcome} after {attempts} attempt(s)",
            {"service": service, "outcome": outcome, "attempts": attempts},
        )


class PartialTeardownError(StackupError):
    """One or more services failed to stop."""

    def __init__(self, failures: Dict[str, str]):
        self.failures = dict(failures)
        names = ", ".join(sorted(self.failures))
        super().__init__(f"Failed to stop: {names}", {"failures": self.failures})


class OperationCancelled(StackupError):
    """The operator interrupted the run."""
