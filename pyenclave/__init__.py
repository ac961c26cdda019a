"""
pyenclave - Isolated package environments activated inside a running interpreter.

pyenclave keeps named environments under ``~/.pyenclave``, each with its own
``Modules`` directory. Activating one replaces ``sys.path`` with the
environment's packages and the interpreter's standard library, and a background
guard keeps it that way until deactivation restores the original path.

Key Features:
    - Environment registry with per-environment ``config.json`` and logs
    - Guarded search path that reverts external edits while active
    - Installs straight into the environment through ``uv``
    - Dependency resolution inside the environment only, with native module
      conflict detection and deepest-first loading
    - Imports in a short-lived worker process, attached by file location

Basic Usage:
    >>> import pyenclave
    >>> manager = pyenclave.EnclaveManager()
    >>> manager.create("web")
    >>> with manager.activated("web"):
    ...     manager.install_package("requests", version="2.32.3")
    ...     requests = manager.import_package("requests")
"""

from ._internal.loader import ImportStrategy, InstallResult
from ._internal.resolver import AssemblyConflict, ConflictType, DependencyNode, ResolutionResult
from ._internal.session import ActiveSession, Scope
from .config import EnclaveConfig, EnvironmentRecord, load_config
from .errors import (
    ActiveEnvironmentConflict,
    AlreadyExistsError,
    CorruptedEnvironmentError,
    DependencyConflict,
    EnclaveError,
    ExternalOperationFailure,
    IsolatedImportError,
    IsolationTimeout,
    NotFoundError,
)
from .host import EnclaveManager

__version__ = "0.1.0"

__all__ = [
    "EnclaveManager",
    "EnclaveConfig",
    "EnvironmentRecord",
    "load_config",
    "Scope",
    "ActiveSession",
    "ImportStrategy",
    "InstallResult",
    "DependencyNode",
    "ResolutionResult",
    "AssemblyConflict",
    "ConflictType",
    "EnclaveError",
    "NotFoundError",
    "AlreadyExistsError",
    "CorruptedEnvironmentError",
    "ActiveEnvironmentConflict",
    "DependencyConflict",
    "IsolationTimeout",
    "ExternalOperationFailure",
    "IsolatedImportError",
]
