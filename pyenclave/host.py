"""Host-side EnclaveManager for pyenclave.

Creates and removes environments, activates one at a time in the current
interpreter, and routes package installs and imports into the active
environment's private ``Modules`` directory.
"""

from __future__ import annotations

import fnmatch
import importlib
import logging
import shutil
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from types import ModuleType
from typing import Any

from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version

from ._internal.environment import (
    CONFIG_FILE,
    MODULES_LOG,
    append_log,
    copy_modules,
    create_layout,
    new_record,
    validate_environment_name,
    validate_path_within_root,
)
from ._internal.guard import PathGuard
from ._internal.interception import CallInterceptor
from ._internal.loader import ImportStrategy, InstallResult, IsolatedLoader
from ._internal.manifest import PackageManifest, iter_manifests
from ._internal.registry import EnvironmentRegistry
from ._internal.repository import UvRepository
from ._internal.resolver import DependencyResolver, LoadReport, build_remediation
from ._internal.search_path import SearchPathManager
from ._internal.session import ActiveSession, Scope, SessionController
from .config import EnclaveConfig, EnvironmentRecord, load_config
from .errors import ActiveEnvironmentConflict, AlreadyExistsError, NotFoundError
from .interfaces import PackageRepository, SearchPathTarget
from .path_helpers import modules_dir

__all__ = ["EnclaveManager"]

logger = logging.getLogger(__name__)


def _prompt_confirm(message: str) -> bool:
    try:
        answer = input(f"{message} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _version_sort_key(version: str) -> tuple[int, Any]:
    try:
        return (1, Version(version))
    except InvalidVersion:
        return (0, version)


class EnclaveManager:
    """Manager for creating, activating and populating isolated environments."""

    def __init__(
        self,
        config: EnclaveConfig | None = None,
        repository: PackageRepository | None = None,
        target: SearchPathTarget | None = None,
        confirm: Callable[[str], bool] | None = None,
    ) -> None:
        """Initialize the EnclaveManager.

        Args:
            config: Tuning and location settings (defaults from ``PYENCLAVE_*``).
            repository: Package repository client; ``uv`` by default.
            target: Search path to manage; the live ``sys.path`` by default.
            confirm: Callback asked before destructive operations without ``force``.
        """
        self.config = config or load_config()
        self.home = Path(self.config["home"]).expanduser()
        self.registry = EnvironmentRegistry(self.home)
        self.path_manager = SearchPathManager(target)
        self.guard = PathGuard(self.path_manager.target, interval=self.config["guard_interval"])
        self.resolver = DependencyResolver(max_depth=self.config["max_depth"])
        self.loader = IsolatedLoader(
            repository or UvRepository(),
            self.path_manager,
            self.resolver,
            exposure_timeout=self.config["exposure_timeout"],
            child_timeout=self.config["child_timeout"],
        )
        self.interceptor = CallInterceptor(
            self.guard,
            import_fn=self.loader.import_from_environment,
            install_fn=self.loader.install_to_environment,
            import_bypass=self.config["import_bypass"],
            install_bypass=self.config["install_bypass"],
        )
        self.controller = SessionController(self.registry, self.path_manager, self.guard, self.interceptor)
        self.confirm = confirm or _prompt_confirm

    @property
    def active(self) -> ActiveSession | None:
        return self.controller.session

    def _require_active(self) -> ActiveSession:
        session = self.controller.session
        if session is None:
            raise ActiveEnvironmentConflict("No environment is active; activate one first")
        return session

    # -- environments -------------------------------------------------------

    def create(
        self,
        name: str,
        path: str | None = None,
        include_system_modules: bool = False,
        base_environment: str | None = None,
        force: bool = False,
        description: str = "",
        auto_activate: bool = False,
    ) -> EnvironmentRecord:
        """Create an environment and register it.

        Raises:
            ValueError: ``name`` is not a legal environment name.
            AlreadyExistsError: The name (or a non-empty target directory) is taken and ``force`` is off,
                or the target directory is not an environment ``force`` may replace.
            ActiveEnvironmentConflict: ``force`` would replace the active environment.
            NotFoundError: ``base_environment`` does not exist.
        """
        validate_environment_name(name)
        if path is None:
            envs_root = self.home / "envs"
            root = (envs_root / name).resolve()
            validate_path_within_root(root, envs_root)
        else:
            root = Path(path).expanduser().resolve()

        base = self.registry.get(base_environment) if base_environment else None

        existing = self.registry.find(name)
        if existing is not None:
            if not force:
                raise AlreadyExistsError(f"Environment '{name}' already exists at {existing['path']}")
            active = self.controller.session
            if active is not None and active.environment_name.lower() == existing["name"].lower():
                raise ActiveEnvironmentConflict(f"Cannot replace '{name}' while it is active")

        replaces_existing = existing is not None and Path(existing["path"]).resolve() == root
        if not replaces_existing and root.exists() and any(root.iterdir()):
            if not force:
                raise AlreadyExistsError(f"Directory {root} already exists and is not empty")
            self._check_replaceable(root)

        if existing is not None:
            logger.warning("Replacing existing environment '%s'", existing["name"])
            shutil.rmtree(existing["path"], ignore_errors=True)
            self.registry.delete(existing["name"])
        if root.exists() and any(root.iterdir()):
            logger.warning("Replacing stale environment directory %s", root)
            shutil.rmtree(root)

        create_layout(root)
        record = new_record(
            name,
            root,
            description=description,
            include_system_paths=include_system_modules,
            auto_activate=auto_activate,
        )
        if base is not None:
            copy_modules(Path(base["path"]), root)
            record["modules"] = [dict(m) for m in base["modules"]]  # type: ignore[misc]
        self.registry.put(record)
        logger.info("Created environment '%s' at %s", name, root)
        return record

    def _check_replaceable(self, root: Path) -> None:
        """Only an unregistered pyenclave environment may be overwritten by ``force``."""
        for record in self.registry.all():
            if Path(record["path"]).resolve() == root:
                raise AlreadyExistsError(f"Directory {root} belongs to environment '{record['name']}'")
        if not (root / CONFIG_FILE).is_file():
            raise AlreadyExistsError(f"Directory {root} is not empty and is not a pyenclave environment")

    def remove(self, name: str, force: bool = False) -> bool:
        """Delete an environment. Returns False if the user declined.

        Raises:
            NotFoundError: No such environment.
            ActiveEnvironmentConflict: ``name`` is the active environment.
        """
        record = self.registry.get(name)
        active = self.controller.session
        if active is not None and active.environment_name.lower() == record["name"].lower():
            raise ActiveEnvironmentConflict(f"Environment '{record['name']}' is active; deactivate it first")
        if not force and not self.confirm(f"Remove environment '{record['name']}' at {record['path']}?"):
            logger.info("Removal of '%s' cancelled", record["name"])
            return False
        shutil.rmtree(record["path"], ignore_errors=True)
        self.registry.delete(record["name"])
        logger.info("Removed environment '%s'", record["name"])
        return True

    def list(
        self,
        name_pattern: str | None = None,
        active_only: bool = False,
        detailed: bool = False,
    ) -> list[dict[str, Any]]:
        """Summaries of registered environments, optionally filtered by a glob."""
        active = self.controller.session
        active_name = active.environment_name.lower() if active else None
        summaries: list[dict[str, Any]] = []
        for record in sorted(self.registry.all(), key=lambda r: r["name"].lower()):
            if name_pattern and not fnmatch.fnmatch(record["name"].lower(), name_pattern.lower()):
                continue
            is_active = record["name"].lower() == active_name
            if active_only and not is_active:
                continue
            summary: dict[str, Any] = {
                "name": record["name"],
                "path": record["path"],
                "active": is_active,
                "description": record.get("description", ""),
                "moduleCount": len(record.get("modules", [])),
            }
            if detailed:
                summary.update(
                    {
                        "created": record.get("created"),
                        "modules": list(record.get("modules", [])),
                        "settings": dict(record.get("settings", {})),
                        "exists": Path(record["path"]).is_dir(),
                    }
                )
            summaries.append(summary)
        return summaries

    def activate(self, name: str, scope: Scope | str = Scope.SESSION) -> ActiveSession:
        return self.controller.activate(name, scope)

    def deactivate(self) -> bool:
        return self.controller.deactivate()

    @contextmanager
    def activated(self, name: str, scope: Scope | str = Scope.SESSION) -> Iterator[ActiveSession]:
        """Activate ``name`` for the duration of a ``with`` block."""
        session = self.activate(name, scope)
        try:
            yield session
        finally:
            if self.controller.session is session:
                self.deactivate()

    def auto_activate(self) -> ActiveSession | None:
        """Activate the first environment whose ``autoActivate`` setting is on."""
        for record in self.registry.all():
            if record.get("settings", {}).get("autoActivate"):
                return self.activate(record["name"])
        return None

    # -- packages -----------------------------------------------------------

    def install_package(
        self,
        name: str,
        version: str | None = None,
        repository: str = "default",
        force: bool = False,
        allow_prerelease: bool = False,
        accept_license: bool = False,
    ) -> InstallResult:
        """Install ``name`` into the active environment."""
        session = self._require_active()
        result: InstallResult = self.interceptor.guarded_install(
            name,
            session.environment_path,
            version=version,
            repository=repository,
            force=force,
            allow_prerelease=allow_prerelease,
            accept_license=accept_license,
            system_path=list(session.original_search_path),
            protected_path=list(session.protected_search_path),
        )
        importlib.invalidate_caches()
        if result.changed:
            self.registry.record_module(session.environment_name, result.name, result.version)
            append_log(session.environment_path, MODULES_LOG, f"INSTALL {result.name} {result.version}")
        return result

    def uninstall_package(self, name: str, version: str | None = None, force: bool = False) -> bool:
        """Remove ``name`` from the active environment. Returns False if the user declined."""
        session = self._require_active()
        label = f"{name} {version}" if version else name
        if not force and not self.confirm(f"Uninstall '{label}' from '{session.environment_name}'?"):
            logger.info("Uninstall of '%s' cancelled", label)
            return False
        removed = self.loader.uninstall_from_environment(name, session.environment_path, version)
        for manifest in removed:
            self.registry.forget_module(session.environment_name, manifest.name, manifest.version)
            append_log(session.environment_path, MODULES_LOG, f"UNINSTALL {manifest.name} {manifest.version}")
        return True

    def _installed(self, session: ActiveSession) -> list[PackageManifest]:
        return list(iter_manifests(modules_dir(session.environment_path)))

    def list_packages(self, name_pattern: str | None = None, list_all_versions: bool = False) -> list[dict[str, str]]:
        """Packages installed in the active environment (empty, with a warning, if none is active)."""
        session = self.controller.session
        if session is None:
            logger.warning("No environment is active; no packages to list")
            return []

        grouped: dict[str, list[PackageManifest]] = {}
        for manifest in self._installed(session):
            if name_pattern and not fnmatch.fnmatch(manifest.name.lower(), name_pattern.lower()):
                continue
            grouped.setdefault(manifest.canonical_name, []).append(manifest)

        entries: list[dict[str, str]] = []
        for key in sorted(grouped):
            versions = sorted(grouped[key], key=lambda m: _version_sort_key(m.version), reverse=True)
            if not list_all_versions:
                versions = versions[:1]
            entries.extend({"name": m.name, "version": m.version, "path": str(m.path)} for m in versions)
        return entries

    def update_packages(
        self,
        name: str | None = None,
        force: bool = False,
        accept_license: bool = False,
    ) -> dict[str, int]:
        """Bring installed packages up to the newest repository version.

        Returns counts under ``checked``, ``updated``, ``current`` and ``failed``.
        """
        session = self._require_active()
        newest: dict[str, PackageManifest] = {}
        for manifest in self._installed(session):
            if name and not fnmatch.fnmatch(manifest.name.lower(), name.lower()):
                continue
            key = canonicalize_name(manifest.name)
            if key not in newest or _version_sort_key(manifest.version) > _version_sort_key(newest[key].version):
                newest[key] = manifest
        if name and not newest:
            raise NotFoundError(f"No installed package matches '{name}'")

        summary = {"checked": 0, "updated": 0, "current": 0, "failed": 0}
        for key in sorted(newest):
            manifest = newest[key]
            summary["checked"] += 1
            try:
                result = self.install_package(manifest.name, force=force, accept_license=accept_license)
            except Exception as exc:
                logger.warning("Update of '%s' failed: %s", manifest.name, exc)
                summary["failed"] += 1
                continue
            if result.changed:
                summary["updated"] += 1
            else:
                summary["current"] += 1
        logger.info(
            "Checked %d packages: %d updated, %d current, %d failed",
            summary["checked"],
            summary["updated"],
            summary["current"],
            summary["failed"],
        )
        return summary

    def import_package(
        self,
        name: str,
        strategy: ImportStrategy | str = ImportStrategy.ISOLATED,
        extras: Iterable[str] = (),
    ) -> ModuleType:
        """Import ``name`` from the active environment."""
        session = self._require_active()
        return self.interceptor.guarded_import(
            name,
            session.environment_path,
            strategy=strategy,
            extras=tuple(extras),
            max_depth=self.config["max_depth"],
        )

    def check_dependencies(self, name: str, extras: Iterable[str] = ()) -> LoadReport:
        """Dry run: resolve ``name`` in the active environment and report conflicts."""
        session = self._require_active()
        tree = self.resolver.resolve(name, session.environment_path, extras=extras)
        if tree.root is None or not tree.root.resolved:
            raise NotFoundError(f"Package '{name}' is not installed in '{session.environment_name}'")
        report = LoadReport(conflicts=self.resolver.detect_conflicts(tree))
        if report.conflicts:
            report.remediation = build_remediation(report.conflicts)
        return report
