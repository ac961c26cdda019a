"""Exception hierarchy for pyenclave.

Validation problems with names or package specs are reported as ``ValueError``
before anything is mutated; everything else derives from :class:`EnclaveError`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ._internal.resolver import AssemblyConflict


class EnclaveError(Exception):
    """Base class for all pyenclave errors."""


class NotFoundError(EnclaveError, LookupError):
    """An environment or package does not exist."""


class AlreadyExistsError(EnclaveError):
    """An environment with the requested name already exists."""


class CorruptedEnvironmentError(EnclaveError):
    """A registry entry exists but its directory is missing or unreadable."""


class ActiveEnvironmentConflict(EnclaveError):
    """The operation conflicts with the active environment (or the lack of one)."""


class DependencyConflict(EnclaveError):
    """Native extension modules required by a package clash with loaded ones.

    Never resolved automatically. ``conflicts`` holds the structured
    :class:`AssemblyConflict` records and ``remediation`` the suggested fix.
    """

    def __init__(
        self,
        message: str,
        conflicts: list[AssemblyConflict] | None = None,
        remediation: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.conflicts = list(conflicts or [])
        self.remediation = dict(remediation or {})


class IsolationTimeout(EnclaveError):
    """The system search path stayed exposed longer than the soft timeout.

    Diagnostic only: it is logged, not raised, by the loader.
    """

    def __init__(self, operation: str, elapsed: float, limit: float) -> None:
        super().__init__(
            f"System search path exposed for {elapsed:.1f}s during {operation} (limit {limit:.1f}s)"
        )
        self.operation = operation
        self.elapsed = elapsed
        self.limit = limit


class ExternalOperationFailure(EnclaveError):
    """Wraps a failure from the repository, installer, or a child process."""


class IsolatedImportError(ExternalOperationFailure):
    """Base for the child-process import failure modes."""


class ChildSpawnError(IsolatedImportError):
    """The import worker process could not be started."""


class ChildExitError(IsolatedImportError):
    """The import worker exited with a non-zero status."""

    def __init__(self, message: str, returncode: int, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class ChildOutputError(IsolatedImportError):
    """The import worker produced empty or unreadable output."""
