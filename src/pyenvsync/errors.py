from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pyenvsync.engine.resolution.incompatibility import Incompatibility
    from pyenvsync.model.environment.environment_model import InstallReport


class PyEnvSyncError(Exception):
    """Base class for every error raised by pyenvsync."""


class ConstraintError(PyEnvSyncError, ValueError):
    """
    A version specifier, marker, requirement, or target environment string is
    malformed. Fatal and never retried.
    """


class ConflictError(PyEnvSyncError):
    """
    No solution satisfies the root requirements.

    Attributes:
        explanation (str): A human-legible derivation of the conflict.
        incompatibility (Incompatibility | None): The root incompatibility the
            solver derived, for programmatic inspection.
    """

    def __init__(self, explanation: str, incompatibility: "Incompatibility | None" = None):
        super().__init__(explanation)
        self.explanation = explanation
        self.incompatibility = incompatibility


class MetadataFetchError(PyEnvSyncError):
    """A metadata provider could not produce candidates for a package."""

    def __init__(self, package: str, message: str | None = None):
        super().__init__(message or f"failed to fetch metadata for {package}")
        self.package = package


class TransientFetchError(MetadataFetchError):
    """A retryable failure such as a timeout or a 5xx response."""


class PackageNotFoundError(MetadataFetchError):
    """The package does not exist in any configured source. Permanent."""

    def __init__(self, package: str, message: str | None = None):
        super().__init__(package, message or f"package {package} was not found")


class ResolverLimitError(PyEnvSyncError):
    """The solver hit its iteration cap; this indicates a defect, not a conflict."""


class ResolutionCancelled(PyEnvSyncError):
    """Resolution was cancelled through its cancellation token."""


class LockfileError(PyEnvSyncError):
    """The lockfile is missing, corrupt, version-mismatched, or stale where that is fatal."""


class ResolutionInProgressError(LockfileError):
    """Another invocation holds the lockfile lock."""


class SyncError(PyEnvSyncError):
    """
    Applying an install plan failed for one or more packages.

    Attributes:
        report (InstallReport): What was applied and what failed.
    """

    def __init__(self, report: "InstallReport"):
        failed = ", ".join(f"{name} ({reason})" for name, reason in sorted(report.failed.items()))
        super().__init__(f"failed to synchronize: {failed}")
        self.report = report


class EnvironmentLockedError(PyEnvSyncError):
    """Another invocation is synchronizing the same environment."""
