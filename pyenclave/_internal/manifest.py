"""Reading package manifests from an environment's ``Modules`` directory.

Two layouts are recognised. The versioned layout is the wheel one,
``<name>-<version>.dist-info``; several versions of the same package may be
present after an interrupted upgrade, so candidates are ordered newest first.
The flat layout is the legacy ``<name>.egg-info`` directory, which carries no
version in its name and is only consulted as a fallback.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from dataclasses import dataclass, field
from importlib import machinery
from importlib import metadata as importlib_metadata
from pathlib import Path

from packaging.requirements import InvalidRequirement, Requirement
from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version

logger = logging.getLogger(__name__)

_NATIVE_SUFFIXES = tuple(sorted(set(machinery.EXTENSION_SUFFIXES) | {".so", ".pyd"}, key=len, reverse=True))


@dataclass
class PackageManifest:
    """Parsed metadata of one installed distribution."""

    name: str
    version: str
    path: Path
    requirements: list[Requirement] = field(default_factory=list)
    top_level: list[str] = field(default_factory=list)
    files: list[Path] = field(default_factory=list)

    @property
    def canonical_name(self) -> str:
        return canonicalize_name(self.name)

    @property
    def native_files(self) -> list[Path]:
        return [f for f in self.files if is_native_file(f)]

    def split_requirements(self, extras: tuple[str, ...] = ()) -> tuple[list[Requirement], list[Requirement]]:
        """Split ``Requires-Dist`` into (required, nested) for the requested extras.

        Required entries apply unconditionally on this interpreter; nested ones are
        activated only by one of ``extras``.
        """
        required: list[Requirement] = []
        nested: list[Requirement] = []
        for req in self.requirements:
            if req.marker is None or req.marker.evaluate({"extra": ""}):
                required.append(req)
                continue
            if any(req.marker.evaluate({"extra": extra}) for extra in extras):
                nested.append(req)
        return required, nested


def is_native_file(path: str | os.PathLike[str]) -> bool:
    return os.fspath(path).endswith(_NATIVE_SUFFIXES)


def native_module_name(path: Path, root: Path) -> str:
    """Return the dotted module name of an extension file under ``root``."""
    rel = path.relative_to(root)
    parts = list(rel.parts[:-1])
    parts.append(rel.name.split(".", 1)[0])
    return ".".join(parts)


def _split_dist_dir(entry: Path) -> tuple[str, str | None]:
    stem = entry.name.rsplit(".", 1)[0]
    if entry.suffix == ".dist-info" and "-" in stem:
        name, version = stem.rsplit("-", 1)
        return name, version
    return stem, None


def _version_key(version: str | None) -> tuple[int, Version | str]:
    if version is None:
        return (0, "")
    try:
        return (1, Version(version))
    except InvalidVersion:
        return (0, version)


def find_manifest_dirs(name: str, modules_dir: str | os.PathLike[str]) -> list[Path]:
    """Return manifest directories for ``name``: versioned newest first, then flat."""
    root = Path(modules_dir)
    if not root.is_dir():
        return []
    wanted = canonicalize_name(name)
    versioned: list[tuple[str, Path]] = []
    flat: list[Path] = []
    for entry in root.iterdir():
        if not entry.is_dir() or entry.suffix not in (".dist-info", ".egg-info"):
            continue
        dist_name, version = _split_dist_dir(entry)
        if canonicalize_name(dist_name) != wanted:
            continue
        if version is None:
            flat.append(entry)
        else:
            versioned.append((version, entry))
    versioned.sort(key=lambda item: _version_key(item[0]), reverse=True)
    return [path for _, path in versioned] + sorted(flat)


def locate_manifest(name: str, modules_dir: str | os.PathLike[str]) -> Path | None:
    candidates = find_manifest_dirs(name, modules_dir)
    return candidates[0] if candidates else None


def read_manifest(path: str | os.PathLike[str]) -> PackageManifest:
    """Parse a ``.dist-info`` or ``.egg-info`` directory.

    Raises:
        ValueError: If the directory carries no readable metadata.
    """
    path = Path(path)
    if not ((path / "METADATA").is_file() or (path / "PKG-INFO").is_file()):
        raise ValueError(f"No package metadata found in {path}")
    dist = importlib_metadata.Distribution.at(path)
    meta = dist.metadata
    if meta is None or not meta.get("Name"):
        raise ValueError(f"No package metadata found in {path}")

    requirements: list[Requirement] = []
    for raw in dist.requires or []:
        try:
            requirements.append(Requirement(raw))
        except InvalidRequirement as exc:
            logger.warning("Skipping unparsable requirement %r in %s: %s", raw, path, exc)

    files: list[Path] = []
    for record in dist.files or []:
        located = Path(os.path.normpath(path.parent / record))
        files.append(located)

    top_level_text = dist.read_text("top_level.txt")
    if top_level_text:
        top_level = [line.strip() for line in top_level_text.splitlines() if line.strip()]
    else:
        top_level = _derive_top_level(files, path.parent, meta["Name"])

    return PackageManifest(
        name=meta["Name"],
        version=meta.get("Version", "0"),
        path=path,
        requirements=requirements,
        top_level=top_level,
        files=files,
    )


def _derive_top_level(files: list[Path], root: Path, name: str) -> list[str]:
    names: list[str] = []
    for f in files:
        try:
            rel = f.relative_to(root)
        except ValueError:
            continue
        head = rel.parts[0]
        if head.endswith((".dist-info", ".egg-info", ".pth")) or head == "__pycache__":
            continue
        if len(rel.parts) == 1:
            if not (head.endswith(".py") or is_native_file(head)):
                continue
            head = head.split(".", 1)[0]
        if head not in names:
            names.append(head)
    return names or [canonicalize_name(name).replace("-", "_")]


def iter_manifests(modules_dir: str | os.PathLike[str]) -> Iterator[PackageManifest]:
    """Yield every readable manifest in ``modules_dir``."""
    root = Path(modules_dir)
    if not root.is_dir():
        return
    for entry in sorted(root.iterdir()):
        if not entry.is_dir() or entry.suffix not in (".dist-info", ".egg-info"):
            continue
        try:
            yield read_manifest(entry)
        except Exception as exc:
            logger.warning("Unreadable manifest %s: %s", entry, exc)
