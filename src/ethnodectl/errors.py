"""Error taxonomy shared by the lifecycle components.

Terminal failures are raised as exceptions. Best-effort failures that must not
abort an operation are collected as :class:`OperationWarning` records and
returned alongside the result.
"""
from __future__ import annotations

from dataclasses import dataclass


class EthnodectlError(RuntimeError):
    """Base class for errors raised by ethnodectl components."""


class AllocationFailed(EthnodectlError):
    """No free port was found within the probe budget."""

    def __init__(self, purpose: str, base: int, increment: int, attempts: int) -> None:
        """Record the exhausted probe range."""
        last = base + increment * (attempts - 1)
        super().__init__(
            f"No free port for {purpose} after {attempts} attempts "
            f"(probed {base}..{last} step {increment})."
        )
        self.purpose = purpose
        self.base = base
        self.increment = increment
        self.attempts = attempts


class ResourceConflict(EthnodectlError):
    """The requested instance name or directory is already taken."""

    def __init__(self, resource: str, detail: str) -> None:
        """Record the conflicting resource."""
        super().__init__(f"{resource}: {detail}")
        self.resource = resource


class RuntimeUnavailable(EthnodectlError):
    """The container runtime could not be reached."""

    def __init__(self, message: str, remediation: str = "") -> None:
        """Record the failure and an operator hint."""
        super().__init__(message)
        self.remediation = remediation or "Ensure the Docker daemon is running and reachable."


class ResourceInUse(EthnodectlError):
    """The container runtime refused to remove a resource that is still in use."""


class RuntimeNotFound(EthnodectlError):
    """The container runtime does not know the requested resource."""


class RuntimeCommandError(EthnodectlError):
    """A container runtime command exited unsuccessfully."""


class InstanceNotFound(EthnodectlError):
    """No registered instance carries the requested name."""


class InstallError(EthnodectlError):
    """Installation failed before promotion; the staging area was rolled back."""

    operation = "Install"

    def __init__(self, step: str, message: str, *, cause: BaseException | None = None) -> None:
        """Record the failing step."""
        super().__init__(f"{self.operation} failed during {step}: {message}")
        self.step = step
        self.cause = cause


class UpdateError(InstallError):
    """Changing the client versions of an installed instance failed."""

    operation = "Update"


class InstallCancelled(InstallError):
    """Installation was interrupted by the operator."""

    def __init__(self, step: str, signal_name: str) -> None:
        """Record the step at which cancellation was observed."""
        super().__init__(step, f"cancelled by {signal_name}")
        self.signal_name = signal_name


@dataclass(frozen=True, slots=True)
class OperationWarning:
    """A non-fatal problem recorded during a lifecycle operation."""

    step: str
    message: str
    kind: str = "warning"

    def __str__(self) -> str:
        """Return the human readable form."""
        return f"{self.step}: {self.message}"


@dataclass(frozen=True, slots=True)
class PartialCleanupWarning(OperationWarning):
    """A best-effort cleanup step failed; the operation continued."""

    kind: str = "partial-cleanup"


@dataclass(frozen=True, slots=True)
class DegradedInstall(OperationWarning):
    """The instance was promoted but its workload failed to start."""

    kind: str = "degraded-install"


__all__ = [
    "AllocationFailed",
    "DegradedInstall",
    "EthnodectlError",
    "InstallCancelled",
    "InstallError",
    "InstanceNotFound",
    "OperationWarning",
    "PartialCleanupWarning",
    "ResourceConflict",
    "ResourceInUse",
    "RuntimeCommandError",
    "RuntimeNotFound",
    "RuntimeUnavailable",
    "UpdateError",
]
