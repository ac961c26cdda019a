"""Installing into and importing from an environment.

Installation briefly exposes the host's system search path so the repository
client can work, and writes only into the environment's ``Modules`` directory.
Imports run either in-process behind a restricted search path, or in a
short-lived worker process (``child_driver``) whose result is attached to the
current interpreter by file location.
"""

from __future__ import annotations

import importlib
import importlib.util
import json
import logging
import os
import shutil
import subprocess
import sys
import tempfile
import time
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import ModuleType
from typing import Any

from packaging.utils import canonicalize_name

from ..config import DEFAULT_CHILD_TIMEOUT, DEFAULT_EXPOSURE_TIMEOUT
from ..errors import (
    ChildExitError,
    ChildOutputError,
    ChildSpawnError,
    CorruptedEnvironmentError,
    DependencyConflict,
    ExternalOperationFailure,
    IsolationTimeout,
    NotFoundError,
)
from ..interfaces import PackageRepository
from ..path_helpers import interpreter_library_paths, modules_dir
from . import child_driver
from .environment import validate_package_spec
from .manifest import PackageManifest, find_manifest_dirs, locate_manifest, read_manifest
from .resolver import DependencyNode, DependencyResolver, build_remediation
from .search_path import SearchPathManager

logger = logging.getLogger(__name__)


class ImportStrategy(str, Enum):
    """How :meth:`IsolatedLoader.import_from_environment` loads a package."""

    ISOLATED = "isolated"
    IN_PROCESS = "in_process"


@dataclass(frozen=True)
class InstallResult:
    name: str
    version: str
    location: str
    changed: bool = True


def primary_module(node: DependencyNode) -> str:
    """Pick the importable top-level module that represents ``node``."""
    wanted = canonicalize_name(node.name).replace("-", "_")
    for module in node.top_level:
        if module.lower() == wanted:
            return module
    if node.top_level:
        return node.top_level[0]
    return wanted


def _is_within(path: str | None, root: str) -> bool:
    if not path:
        return False
    try:
        Path(path).resolve().relative_to(Path(root).resolve())
    except ValueError:
        return False
    return True


def _existing(paths: Iterable[str]) -> list[str]:
    result: list[str] = []
    for path in paths:
        if os.path.exists(path) and path not in result:
            result.append(path)
    return result


def evict_foreign_module(module_name: str, root: str) -> list[str]:
    """Drop ``module_name`` and its submodules from ``sys.modules`` unless loaded from ``root``."""
    existing = sys.modules.get(module_name)
    if existing is None or _is_within(getattr(existing, "__file__", None), root):
        return []
    prefix = module_name + "."
    evicted = [name for name in list(sys.modules) if name == module_name or name.startswith(prefix)]
    for name in evicted:
        sys.modules.pop(name, None)
    logger.info("[PyEnclave][Loader] Unloaded previously imported '%s' (%d modules)", module_name, len(evicted))
    return evicted


class IsolatedLoader:
    def __init__(
        self,
        repository: PackageRepository,
        path_manager: SearchPathManager,
        resolver: DependencyResolver | None = None,
        exposure_timeout: float = DEFAULT_EXPOSURE_TIMEOUT,
        child_timeout: float = DEFAULT_CHILD_TIMEOUT,
    ) -> None:
        self.repository = repository
        self.path_manager = path_manager
        self.resolver = resolver or DependencyResolver()
        self.exposure_timeout = exposure_timeout
        self.child_timeout = child_timeout

    @contextmanager
    def system_path_exposure(
        self,
        system_path: Sequence[str] | None,
        restore_to: Sequence[str] | None,
        operation: str,
    ) -> Iterator[None]:
        """Expose ``system_path`` on the live search path, then restore ``restore_to``.

        Restoration happens on every exit path. Staying exposed longer than
        ``exposure_timeout`` is reported as an :class:`IsolationTimeout` warning.
        """
        started = time.monotonic()
        if system_path is not None:
            self.path_manager.install(system_path)
        try:
            yield
        finally:
            elapsed = time.monotonic() - started
            if restore_to is not None:
                try:
                    self.path_manager.install(restore_to)
                except Exception as exc:
                    logger.warning("[PyEnclave][Loader] Could not restore protected path after %s: %s", operation, exc)
            if elapsed > self.exposure_timeout:
                logger.warning("[PyEnclave][Loader] %s", IsolationTimeout(operation, elapsed, self.exposure_timeout))

    def install_to_environment(
        self,
        name: str,
        environment_path: str | os.PathLike[str],
        version: str | None = None,
        repository: str = "default",
        force: bool = False,
        allow_prerelease: bool = False,
        accept_license: bool = False,
        system_path: Sequence[str] | None = None,
        protected_path: Sequence[str] | None = None,
    ) -> InstallResult:
        """Fetch ``name`` from ``repository`` straight into the environment's ``Modules``."""
        validate_package_spec(name)
        if version:
            validate_package_spec(version)
        destination = Path(modules_dir(environment_path))
        if not destination.is_dir():
            raise CorruptedEnvironmentError(f"Package directory {destination} is missing")

        with self.system_path_exposure(system_path, protected_path, f"install of '{name}'"):
            try:
                resolved = self.repository.find(
                    name, version=version, repository=repository, allow_prerelease=allow_prerelease
                )
            except LookupError as exc:
                raise NotFoundError(f"Package '{name}' not found in repository '{repository}': {exc}") from exc
            except Exception as exc:
                raise ExternalOperationFailure(f"Repository lookup for '{name}' failed: {exc}") from exc

            existing = locate_manifest(name, destination)
            if existing is not None and not force:
                try:
                    current = read_manifest(existing)
                except ValueError:
                    current = None
                if current is not None and current.version == resolved:
                    logger.info("[PyEnclave][Loader] %s %s already installed", current.name, resolved)
                    return InstallResult(current.name, resolved, str(destination), changed=False)

            try:
                self.repository.save(
                    name,
                    resolved,
                    destination,
                    repository=repository,
                    force=force,
                    allow_prerelease=allow_prerelease,
                    accept_license=accept_license,
                )
            except Exception as exc:
                raise ExternalOperationFailure(f"Installing '{name}' {resolved} failed: {exc}") from exc

        installed_name = name
        manifest_path = locate_manifest(name, destination)
        if manifest_path is not None:
            try:
                installed_name = read_manifest(manifest_path).name
            except ValueError as exc:
                logger.warning("[PyEnclave][Loader] Installed '%s' but its manifest is unreadable: %s", name, exc)
        logger.info("[PyEnclave][Loader] Installed %s %s into %s", installed_name, resolved, destination)
        return InstallResult(installed_name, resolved, str(destination))

    def import_from_environment(
        self,
        name: str,
        environment_path: str | os.PathLike[str],
        strategy: ImportStrategy | str = ImportStrategy.ISOLATED,
        extras: Iterable[str] = (),
        max_depth: int | None = None,
    ) -> ModuleType:
        """Import ``name`` and its dependency closure from the environment only.

        Raises:
            NotFoundError: The package is not installed in the environment.
            DependencyConflict: A native module it ships clashes with a loaded one.
            IsolatedImportError: The worker process failed (isolated strategy).
        """
        strategy = ImportStrategy(strategy)
        root_dir = modules_dir(environment_path)
        if strategy is ImportStrategy.IN_PROCESS:
            return self._import_in_process(name, environment_path, root_dir, extras, max_depth)

        tree = self.resolver.resolve(name, environment_path, max_depth=max_depth, extras=extras)
        if tree.root is None or not tree.root.resolved:
            raise NotFoundError(f"Package '{name}' is not installed in {environment_path}")

        conflicts = self.resolver.detect_conflicts(tree)
        if conflicts:
            names = ", ".join(sorted({c.assembly_name for c in conflicts}))
            raise DependencyConflict(
                f"Cannot import '{name}': native modules already loaded with a different build: {names}",
                conflicts=conflicts,
                remediation=build_remediation(conflicts),
            )

        order = self.resolver.compute_load_order(tree)
        descriptor = self._run_child(tree.root, order, root_dir)
        return self._attach(descriptor, tree.root, root_dir)

    def _import_in_process(
        self,
        name: str,
        environment_path: str | os.PathLike[str],
        root_dir: str,
        extras: Iterable[str],
        max_depth: int | None,
    ) -> ModuleType:
        restricted = [root_dir] + _existing(interpreter_library_paths())
        loaded_nodes: list[DependencyNode] = []

        def load(node: DependencyNode) -> None:
            for module_name in node.top_level or [primary_module(node)]:
                evict_foreign_module(module_name, root_dir)
                importlib.import_module(module_name)
            loaded_nodes.append(node)

        saved = self.path_manager.snapshot()
        self.path_manager.install(restricted)
        try:
            importlib.invalidate_caches()
            report = self.resolver.plan_and_load(
                name, environment_path, load, extras=extras, max_depth=max_depth
            )
        finally:
            self.path_manager.install(saved)

        report.raise_for_conflicts()
        wanted = canonicalize_name(name)
        root = next((n for n in loaded_nodes if canonicalize_name(n.name) == wanted), None)
        if root is None:
            errors = "; ".join(f"{f.name}: {f.error}" for f in report.failed) or "unknown error"
            if any(f.error == "not found in environment" for f in report.failed):
                raise NotFoundError(f"Package '{name}' is not installed in {environment_path}")
            raise ImportError(f"Could not import '{name}' from {root_dir}: {errors}")
        return sys.modules[primary_module(root)]

    def uninstall_from_environment(
        self,
        name: str,
        environment_path: str | os.PathLike[str],
        version: str | None = None,
    ) -> list[PackageManifest]:
        """Delete every installed copy of ``name`` (optionally only ``version``).

        Only files inside the environment's ``Modules`` directory are touched.

        Raises:
            NotFoundError: Nothing matching is installed.
        """
        root = Path(modules_dir(environment_path))
        manifests: list[PackageManifest] = []
        for path in find_manifest_dirs(name, root):
            try:
                manifest = read_manifest(path)
            except ValueError as exc:
                logger.warning("[PyEnclave][Loader] Skipping unreadable manifest %s: %s", path, exc)
                continue
            if version is None or manifest.version == version:
                manifests.append(manifest)
        if not manifests:
            suffix = f" {version}" if version else ""
            raise NotFoundError(f"Package '{name}{suffix}' is not installed in {environment_path}")

        for manifest in manifests:
            _remove_distribution(manifest, root)
            logger.info("[PyEnclave][Loader] Removed %s %s", manifest.name, manifest.version)
        importlib.invalidate_caches()
        return manifests

    def _child_env(self) -> dict[str, str]:
        env = {"PYENCLAVE_CHILD": "1", "PYTHONIOENCODING": "utf-8"}
        for key in ("PATH", "SYSTEMROOT", "TMP", "TEMP", "TMPDIR"):
            if key in os.environ:
                env[key] = os.environ[key]
        return env

    def _spawn(self, cmd: list[str], env: dict[str, str], stderr: Any) -> subprocess.CompletedProcess:
        return subprocess.run(  # noqa: S603  # Trusted: our own driver under sys.executable
            cmd,
            env=env,
            stdout=subprocess.DEVNULL,
            stderr=stderr,
            timeout=self.child_timeout,
            check=False,
        )

    def _run_child(self, root: DependencyNode, order: list[DependencyNode], root_dir: str) -> dict[str, Any]:
        request = {
            "search_path": [root_dir] + _existing(interpreter_library_paths()),
            "executable": sys.executable,
            "target": root.name,
            "plan": [{"name": node.name, "modules": node.top_level or [primary_module(node)]} for node in order],
        }
        workdir = Path(tempfile.mkdtemp(prefix="pyenclave-import-"))
        try:
            driver_path = workdir / "driver.py"
            request_path = workdir / "request.json"
            output_path = workdir / "output.json"
            stderr_path = workdir / "stderr.txt"
            driver_path.write_text(Path(child_driver.__file__).read_text(encoding="utf-8"), encoding="utf-8")
            request_path.write_text(json.dumps(request), encoding="utf-8")
            output_path.touch()

            cmd = [request["executable"], "-S", "-E", "-s", str(driver_path), str(request_path), str(output_path)]
            logger.debug("[PyEnclave][Loader] Importing '%s' in worker process", root.name)
            try:
                with open(stderr_path, "w", encoding="utf-8") as err:
                    proc = self._spawn(cmd, self._child_env(), err)
            except subprocess.TimeoutExpired as exc:
                raise ChildExitError(
                    f"Import worker for '{root.name}' timed out after {self.child_timeout}s", returncode=-1
                ) from exc
            except OSError as exc:
                raise ChildSpawnError(f"Could not start import worker for '{root.name}': {exc}") from exc

            stderr_text = stderr_path.read_text(encoding="utf-8", errors="replace").strip()
            if proc.returncode != 0:
                raise ChildExitError(
                    f"Import worker for '{root.name}' exited with status {proc.returncode}: {stderr_text or '(no output)'}",
                    returncode=proc.returncode,
                    stderr=stderr_text,
                )

            try:
                text = output_path.read_text(encoding="utf-8")
            except OSError as exc:
                raise ChildOutputError(f"Import worker output for '{root.name}' is unreadable: {exc}") from exc
            if not text.strip():
                raise ChildOutputError(f"Import worker for '{root.name}' produced no output")
            try:
                descriptor = json.loads(text)
            except json.JSONDecodeError as exc:
                raise ChildOutputError(f"Import worker output for '{root.name}' is corrupt: {exc}") from exc
            if not isinstance(descriptor, dict) or not isinstance(descriptor.get("modules"), dict):
                raise ChildOutputError(f"Import worker output for '{root.name}' has no module table")
            return descriptor
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    def _attach(
        self,
        descriptor: dict[str, Any],
        root: DependencyNode,
        root_dir: str,
    ) -> ModuleType:
        target = primary_module(root)
        modules: dict[str, Any] = descriptor["modules"]
        if target not in modules:
            raise ChildOutputError(f"Import worker did not report module '{target}'")

        for module_name in descriptor.get("imported", []):
            info = modules.get(module_name)
            if info is None:
                continue
            self._attach_module(module_name, info, root_dir)
        module = sys.modules.get(target)
        if module is None:
            raise ChildOutputError(f"Module '{target}' has no file location to attach from")
        return module

    def _attach_module(self, module_name: str, info: dict[str, Any], root_dir: str) -> ModuleType | None:
        location = info.get("file")
        if not location:
            # Namespace packages carry no file; the worker import already proved them.
            return None
        if not _is_within(location, root_dir):
            raise ChildOutputError(f"Module '{module_name}' was loaded from {location}, outside {root_dir}")

        existing = sys.modules.get(module_name)
        if existing is not None and os.path.realpath(getattr(existing, "__file__", "") or "") == os.path.realpath(location):
            return existing
        evict_foreign_module(module_name, root_dir)

        search = info.get("search_locations") if info.get("is_package") else None
        spec = importlib.util.spec_from_file_location(module_name, location, submodule_search_locations=search)
        if spec is None or spec.loader is None:
            raise ChildOutputError(f"Cannot build an import spec for '{module_name}' at {location}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except BaseException:
            sys.modules.pop(module_name, None)
            raise
        logger.debug("[PyEnclave][Loader] Attached %s from %s", module_name, location)
        return module


def _remove_distribution(manifest: PackageManifest, root: Path) -> None:
    """Delete the files a distribution's RECORD lists under ``root``, then its manifest."""
    touched_dirs: set[Path] = set()
    for path in manifest.files:
        if not _is_within(str(path), str(root)):
            logger.debug("Leaving %s in place: outside %s", path, root)
            continue
        try:
            if path.is_file() or path.is_symlink():
                path.unlink()
        except OSError as exc:
            logger.warning("[PyEnclave][Loader] Could not delete %s: %s", path, exc)
            continue
        touched_dirs.add(path.parent)

    shutil.rmtree(manifest.path, ignore_errors=True)

    root_resolved = root.resolve()
    for directory in sorted(touched_dirs, key=lambda p: len(p.parts), reverse=True):
        current = directory
        while current.resolve() != root_resolved and _is_within(str(current), str(root)):
            pycache = current / "__pycache__"
            if pycache.is_dir():
                shutil.rmtree(pycache, ignore_errors=True)
            try:
                current.rmdir()
            except OSError:
                break
            current = current.parent
