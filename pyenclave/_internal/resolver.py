"""Dependency resolution strictly inside an environment.

The resolver walks ``Requires-Dist`` declarations starting from one package,
looking manifests up only in the environment's ``Modules`` directory. It then
checks the compiled extension modules each package ships against those already
loaded in the process, since those cannot be unloaded safely, and produces a
deepest-first load order.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from importlib import metadata as importlib_metadata
from pathlib import Path
from typing import Any

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.utils import canonicalize_name

from ..config import DEFAULT_MAX_DEPTH
from ..errors import DependencyConflict
from ..path_helpers import modules_dir
from .manifest import PackageManifest, is_native_file, locate_manifest, native_module_name, read_manifest

logger = logging.getLogger(__name__)


class ConflictType(Enum):
    VERSION_MISMATCH = "VersionMismatch"
    IDENTITY_MISMATCH = "IdentityMismatch"


@dataclass(frozen=True)
class AssemblyRef:
    """A compiled extension module and the distribution version that ships it."""

    name: str
    version: str | None
    location: str


@dataclass
class DependencyNode:
    name: str
    required_version: str | None
    resolved_manifest_path: Path | None
    dependencies: list[DependencyNode] = field(default_factory=list)
    required_native_assemblies: list[AssemblyRef] = field(default_factory=list)
    depth: int = 0
    resolved: bool = False
    version: str | None = None
    extras: tuple[str, ...] = ()
    top_level: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class AssemblyConflict:
    assembly_name: str
    loaded_version: str | None
    required_version: str | None
    loaded_location: str
    required_location: str
    conflict_type: ConflictType
    required_by: str = ""


@dataclass(frozen=True)
class UnresolvedBranch:
    name: str
    depth: int
    reason: str


@dataclass
class ResolutionResult:
    root: DependencyNode | None
    all: dict[str, DependencyNode] = field(default_factory=dict)
    unresolved: list[UnresolvedBranch] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.all)


@dataclass(frozen=True)
class LoadFailure:
    name: str
    error: str


@dataclass
class LoadReport:
    loaded: list[str] = field(default_factory=list)
    failed: list[LoadFailure] = field(default_factory=list)
    conflicts: list[AssemblyConflict] = field(default_factory=list)
    remediation: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.conflicts and not self.failed

    def raise_for_conflicts(self) -> None:
        if self.conflicts:
            names = ", ".join(sorted({c.assembly_name for c in self.conflicts}))
            raise DependencyConflict(
                f"Native module conflicts with already-loaded modules: {names}",
                conflicts=self.conflicts,
                remediation=self.remediation,
            )


def loaded_native_modules() -> dict[str, AssemblyRef]:
    """Index the compiled extension modules currently in ``sys.modules``."""
    try:
        owners = importlib_metadata.packages_distributions()
    except Exception as exc:
        logger.debug("packages_distributions() failed: %s", exc)
        owners = {}

    index: dict[str, AssemblyRef] = {}
    for mod_name, module in list(sys.modules.items()):
        location = getattr(module, "__file__", None)
        if not location or not is_native_file(location):
            continue
        top = mod_name.split(".", 1)[0]
        version: str | None = None
        for dist_name in owners.get(top, []):
            try:
                version = importlib_metadata.version(dist_name)
                break
            except importlib_metadata.PackageNotFoundError:
                continue
        if version is None:
            top_module = sys.modules.get(top)
            raw = getattr(top_module, "__version__", None)
            version = str(raw) if raw is not None else None
        index[mod_name] = AssemblyRef(name=mod_name, version=version, location=os.path.realpath(location))
    return index


def build_remediation(conflicts: Iterable[AssemblyConflict]) -> dict[str, Any]:
    """Suggest how to get out of a conflict without force-unloading anything."""
    conflicts = list(conflicts)
    remove: set[str] = set()
    install: set[str] = set()
    for conflict in conflicts:
        remove.add(conflict.assembly_name.split(".", 1)[0])
        if conflict.required_by and conflict.loaded_version:
            install.add(f"{conflict.required_by}=={conflict.loaded_version}")
    return {
        "remove_from_session": sorted(remove),
        "install_versions": sorted(install),
        "message": (
            "Start a fresh interpreter before importing, or install versions that match "
            "the native modules already loaded."
        ),
    }


class DependencyResolver:
    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH) -> None:
        self.max_depth = max_depth

    def resolve(
        self,
        package_name: str,
        environment_path: str | os.PathLike[str],
        max_depth: int | None = None,
        extras: Iterable[str] = (),
    ) -> ResolutionResult:
        """Build the dependency tree of ``package_name`` from the environment only."""
        limit = self.max_depth if max_depth is None else max_depth
        root_dir = Path(modules_dir(environment_path))
        result = ResolutionResult(root=None)
        memo: dict[tuple[str, int], DependencyNode | None] = {}
        manifests: dict[Path, PackageManifest] = {}

        def visit(name: str, specifier: str | None, node_extras: tuple[str, ...], depth: int) -> DependencyNode | None:
            if depth > limit:
                logger.warning(
                    "[PyEnclave][Resolver] Max depth %d exceeded at '%s'; branch left unresolved", limit, name
                )
                result.unresolved.append(UnresolvedBranch(name, depth, "max_depth"))
                return None

            key = (canonicalize_name(name), depth)
            if key in memo:
                return memo[key]
            # Placeholder so a re-entry at the same depth short-circuits.
            memo[key] = None

            manifest_path = locate_manifest(name, root_dir)
            node = DependencyNode(
                name=name,
                required_version=specifier,
                resolved_manifest_path=manifest_path,
                depth=depth,
                extras=node_extras,
            )
            if manifest_path is None:
                logger.warning("[PyEnclave][Resolver] Package '%s' not found in %s", name, root_dir)
                result.unresolved.append(UnresolvedBranch(name, depth, "not_found"))
                memo[key] = node
                _record(node)
                return node

            try:
                manifest = manifests.get(manifest_path) or read_manifest(manifest_path)
            except Exception as exc:
                logger.warning("[PyEnclave][Resolver] Manifest for '%s' unreadable: %s", name, exc)
                result.unresolved.append(UnresolvedBranch(name, depth, "bad_manifest"))
                memo[key] = node
                _record(node)
                return node
            manifests[manifest_path] = manifest

            node.name = manifest.name
            node.version = manifest.version
            node.top_level = list(manifest.top_level)
            node.resolved = True
            _check_specifier(node)
            node.required_native_assemblies = [
                AssemblyRef(
                    name=native_module_name(f, root_dir),
                    version=manifest.version,
                    location=os.path.realpath(f),
                )
                for f in manifest.native_files
                if _within(f, root_dir)
            ]
            memo[key] = node

            required, nested = manifest.split_requirements(node_extras)
            for req in required + nested:
                child = visit(req.name, str(req.specifier) or None, tuple(sorted(req.extras)), depth + 1)
                if child is not None:
                    node.dependencies.append(child)

            _record(node)
            return node

        def _record(node: DependencyNode) -> None:
            key = canonicalize_name(node.name)
            existing = result.all.get(key)
            if existing is None or node.depth > existing.depth or (node.resolved and not existing.resolved):
                result.all[key] = node

        result.root = visit(package_name, None, tuple(sorted(extras)), 0)
        logger.debug(
            "[PyEnclave][Resolver] Resolved '%s': %d packages, %d unresolved branches",
            package_name,
            result.count,
            len(result.unresolved),
        )
        return result

    def detect_conflicts(
        self,
        tree: ResolutionResult,
        loaded: Mapping[str, AssemblyRef] | None = None,
    ) -> list[AssemblyConflict]:
        """Compare every declared native module against what the process has loaded."""
        if loaded is None:
            loaded = loaded_native_modules()

        conflicts: list[AssemblyConflict] = []
        declared: dict[str, tuple[AssemblyRef, str]] = {}
        for node in sorted(tree.all.values(), key=lambda n: (n.depth, canonicalize_name(n.name))):
            for ref in node.required_native_assemblies:
                owner = node.name
                current = loaded.get(ref.name)
                if current is not None:
                    conflict_type = _classify(current, ref)
                elif ref.name in declared:
                    # Same native module shipped by two packages of one tree.
                    current = declared[ref.name][0]
                    conflict_type = _classify_declared(current, ref)
                else:
                    conflict_type = None
                declared.setdefault(ref.name, (ref, owner))
                if conflict_type is None:
                    continue
                conflicts.append(
                    AssemblyConflict(
                        assembly_name=ref.name,
                        loaded_version=current.version,
                        required_version=ref.version,
                        loaded_location=current.location,
                        required_location=ref.location,
                        conflict_type=conflict_type,
                        required_by=owner,
                    )
                )
        return conflicts

    def compute_load_order(self, tree: ResolutionResult) -> list[DependencyNode]:
        """Resolved packages, deepest first, ties broken by name."""
        nodes = [n for n in tree.all.values() if n.resolved]
        return sorted(nodes, key=lambda n: (-n.depth, canonicalize_name(n.name)))

    def load_in_order(
        self,
        ordered: Iterable[DependencyNode],
        load_fn: Callable[[DependencyNode], Any],
    ) -> LoadReport:
        """Load each package in turn; a failure does not stop the rest."""
        report = LoadReport()
        for node in ordered:
            try:
                load_fn(node)
            except Exception as exc:
                logger.warning("[PyEnclave][Resolver] Failed to load '%s': %s", node.name, exc)
                report.failed.append(LoadFailure(node.name, str(exc)))
            else:
                report.loaded.append(node.name)
        return report

    def plan_and_load(
        self,
        package_name: str,
        environment_path: str | os.PathLike[str],
        load_fn: Callable[[DependencyNode], Any],
        loaded: Mapping[str, AssemblyRef] | None = None,
        extras: Iterable[str] = (),
        max_depth: int | None = None,
    ) -> LoadReport:
        """Resolve, refuse on native conflicts, otherwise load deepest first."""
        tree = self.resolve(package_name, environment_path, max_depth=max_depth, extras=extras)
        if tree.root is None or not tree.root.resolved:
            return LoadReport(failed=[LoadFailure(package_name, "not found in environment")])

        conflicts = self.detect_conflicts(tree, loaded)
        if conflicts:
            logger.warning(
                "[PyEnclave][Resolver] %d native module conflict(s) while loading '%s'; nothing loaded",
                len(conflicts),
                package_name,
            )
            return LoadReport(conflicts=conflicts, remediation=build_remediation(conflicts))

        return self.load_in_order(self.compute_load_order(tree), load_fn)


def _classify(current: AssemblyRef, wanted: AssemblyRef) -> ConflictType | None:
    if os.path.normcase(current.location) == os.path.normcase(wanted.location):
        return None
    if current.version is not None and wanted.version is not None and current.version != wanted.version:
        return ConflictType.VERSION_MISMATCH
    return ConflictType.IDENTITY_MISMATCH


def _classify_declared(first: AssemblyRef, other: AssemblyRef) -> ConflictType | None:
    if first.version is not None and other.version is not None and first.version != other.version:
        return ConflictType.VERSION_MISMATCH
    if os.path.normcase(first.location) != os.path.normcase(other.location):
        return ConflictType.IDENTITY_MISMATCH
    return None


def _check_specifier(node: DependencyNode) -> None:
    if not node.required_version or node.version is None:
        return
    try:
        spec = SpecifierSet(node.required_version)
    except InvalidSpecifier:
        return
    if node.version not in spec:
        logger.warning(
            "[PyEnclave][Resolver] '%s' %s installed but %s required",
            node.name,
            node.version,
            node.required_version,
        )


def _within(path: Path, root: Path) -> bool:
    try:
        path.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    return True
