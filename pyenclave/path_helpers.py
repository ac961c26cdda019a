"""Search-path computation and the targets pyenclave protects.

``compute_search_path`` builds the ordered path for an active environment: the
environment's ``Modules`` directory first, followed either by the essential host
paths or by the host path minus user-profile entries. ``SysPathTarget`` and
``EnvironmentVariableTarget`` expose the live search path that the session
installs, guards, and restores.
"""

from __future__ import annotations

import importlib.util
import os
import site
import sys
import sysconfig
from typing import List, Sequence

MODULES_DIR = "Modules"
SCRIPTS_DIR = "Scripts"
CACHE_DIR = "Cache"
LOGS_DIR = "Logs"
ENVIRONMENT_SUBDIRS = (MODULES_DIR, SCRIPTS_DIR, CACHE_DIR, LOGS_DIR)


def _norm(path: str) -> str:
    return os.path.normcase(os.path.abspath(path))


def modules_dir(environment_path: str | os.PathLike[str]) -> str:
    """Return the private package directory of an environment."""
    return os.path.join(os.fspath(environment_path), MODULES_DIR)


def interpreter_library_paths() -> List[str]:
    """Return the base interpreter's standard library directories.

    Paths are resolved against ``sys.base_prefix``/``sys.base_exec_prefix`` so a
    virtual environment still yields the real stdlib and its compiled
    extensions (``lib-dynload`` or ``DLLs``). Nothing from site-packages is
    included.
    """
    base_vars = {
        "base": sys.base_prefix,
        "installed_base": sys.base_prefix,
        "platbase": sys.base_exec_prefix,
        "installed_platbase": sys.base_exec_prefix,
    }
    stdlib = sysconfig.get_path("stdlib", vars=base_vars)
    platstdlib = sysconfig.get_path("platstdlib", vars=base_vars)
    version = f"{sys.version_info[0]}{sys.version_info[1]}"
    candidates = [stdlib, platstdlib]
    if os.name == "nt":
        candidates.append(os.path.join(sys.base_exec_prefix, "DLLs"))
        candidates.append(os.path.join(sys.base_prefix, f"python{version}.zip"))
    else:
        candidates.append(os.path.join(platstdlib, "lib-dynload"))
        # Build-time location of compiled stdlib modules; dropped when relocated.
        candidates.append(sysconfig.get_config_var("DESTSHARED") or "")
        candidates.append(os.path.join(sys.base_prefix, "lib", f"python{version}.zip"))
    return [p for p in candidates if p]


def _package_parent(name: str) -> str | None:
    try:
        spec = importlib.util.find_spec(name)
    except (ImportError, ValueError):
        return None
    if spec is None:
        return None
    locations = list(spec.submodule_search_locations or [])
    location = locations[0] if locations else spec.origin
    if not location or not os.path.isabs(location):
        return None
    return os.path.dirname(os.path.abspath(location))


def essential_host_paths() -> List[str]:
    """Return the host paths an isolated environment cannot do without.

    These are :func:`interpreter_library_paths` (the stdlib ships ``ensurepip``
    and ``venv``), the directory holding ``pip`` so package tooling keeps
    working, and the directory holding ``pyenclave`` itself.
    """
    paths = interpreter_library_paths()
    for package in ("pip", "pyenclave"):
        parent = _package_parent(package)
        if parent:
            paths.append(parent)
    return paths


def user_profile_paths() -> List[str]:
    """Return the user-site locations that must never leak into an environment."""
    paths: List[str] = []
    try:
        paths.append(site.getuserbase())
        paths.append(site.getusersitepackages())
    except Exception:  # noqa: S110 - site may be unavailable under -S
        pass
    return [p for p in paths if p]


def is_user_profile_path(path: str, user_paths: Sequence[str]) -> bool:
    norm = _norm(path)
    for user_path in user_paths:
        root = _norm(user_path)
        if norm == root or norm.startswith(root + os.sep):
            return True
    return False


def compute_search_path(
    environment_path: str | os.PathLike[str],
    include_system_paths: bool,
    original: Sequence[str] | None = None,
    user_paths: Sequence[str] | None = None,
) -> List[str]:
    """Construct the protected search path for an environment.

    The environment's ``Modules`` directory always comes first. Without
    ``include_system_paths`` only :func:`essential_host_paths` follow; with it,
    the ``original`` path (default: live ``sys.path``) follows minus user-profile
    entries. Entries that do not exist on disk and duplicates are dropped.
    """
    if user_paths is None:
        user_paths = user_profile_paths()

    result: List[str] = [modules_dir(environment_path)]
    seen: set[str] = {_norm(result[0])}

    def add_path(path: str) -> None:
        if not path or not os.path.exists(path):
            return
        key = _norm(path)
        if key in seen:
            return
        seen.add(key)
        result.append(path)

    if include_system_paths:
        source = list(sys.path) if original is None else list(original)
        for path in source:
            if is_user_profile_path(path, user_paths):
                continue
            add_path(path)
    else:
        for path in essential_host_paths():
            add_path(path)

    return result


class SysPathTarget:
    """The interpreter's live ``sys.path``, mutated in place."""

    description = "sys.path"

    def read(self) -> List[str]:
        return list(sys.path)

    def write(self, entries: List[str]) -> None:
        # Slice assignment keeps the list object that importlib already holds.
        sys.path[:] = list(entries)


class EnvironmentVariableTarget:
    """An ``os.pathsep``-joined search path stored in an environment variable."""

    def __init__(self, name: str = "PYTHONPATH") -> None:
        self.name = name

    @property
    def description(self) -> str:
        return f"${self.name}"

    def read(self) -> List[str]:
        raw = os.environ.get(self.name, "")
        return [p for p in raw.split(os.pathsep) if p]

    def write(self, entries: List[str]) -> None:
        if entries:
            os.environ[self.name] = os.pathsep.join(entries)
        else:
            os.environ.pop(self.name, None)
