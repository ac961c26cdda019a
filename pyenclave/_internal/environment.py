from __future__ import annotations

import logging
import os
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path

from ..config import EnvironmentRecord, EnvironmentSettings
from ..path_helpers import ENVIRONMENT_SUBDIRS, LOGS_DIR, MODULES_DIR

logger = logging.getLogger(__name__)

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,49}$")
_DANGEROUS_PATTERNS = ("&&", "||", "|", "`", "$", "\n", "\r", "\0", ";", " ")

CONFIG_FILE = "config.json"
ACTIVATION_LOG = "activation.log"
MODULES_LOG = "modules.log"


def validate_environment_name(name: str) -> str:
    """Return ``name`` if it is a legal environment name.

    Names are 1-50 characters of letters, digits, ``.``, ``_`` and ``-`` and must
    start with a letter or digit.

    Raises:
        ValueError: If the name is empty, too long, or uses other characters.
    """
    if not name:
        raise ValueError("Environment name cannot be empty")
    if len(name) > 50:
        raise ValueError(f"Environment name '{name[:20]}...' is longer than 50 characters")
    if not _NAME_PATTERN.match(name):
        raise ValueError(
            f"Invalid environment name '{name}'. "
            "Use letters, digits, '.', '_' or '-', starting with a letter or digit."
        )
    return name


def validate_package_spec(spec: str) -> None:
    """Reject package names and versions that could be read as installer options."""
    if not spec:
        raise ValueError("Package name cannot be empty")
    if spec.startswith("-"):
        raise ValueError(
            f"Invalid package '{spec}'. Package names cannot start with '-' as this could be a command option."
        )
    for pattern in _DANGEROUS_PATTERNS:
        if pattern in spec:
            raise ValueError(f"Invalid package '{spec}'. Contains potentially dangerous character: '{pattern}'")


def validate_path_within_root(path: Path, root: Path) -> None:
    """Ensure ``path`` is contained within ``root`` to avoid path escape."""
    try:
        path.resolve().relative_to(root.resolve())
    except ValueError as err:
        raise ValueError(f"Path '{path}' is not within root '{root}'") from err


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def new_record(
    name: str,
    path: Path,
    description: str = "",
    include_system_paths: bool = False,
    auto_activate: bool = False,
) -> EnvironmentRecord:
    settings: EnvironmentSettings = {
        "includeSystemPaths": include_system_paths,
        "autoActivate": auto_activate,
    }
    return {
        "name": name,
        "path": str(path),
        "created": utc_timestamp(),
        "description": description,
        "modules": [],
        "settings": settings,
    }


def create_layout(root: Path) -> None:
    """Create the environment directory tree (Modules, Scripts, Cache, Logs)."""
    root.mkdir(parents=True, exist_ok=True)
    for sub in ENVIRONMENT_SUBDIRS:
        (root / sub).mkdir(exist_ok=True)


def layout_is_intact(root: Path) -> bool:
    return root.is_dir() and (root / MODULES_DIR).is_dir()


def copy_modules(source_root: Path, dest_root: Path) -> None:
    """Seed ``dest_root/Modules`` with the packages of another environment."""
    src = source_root / MODULES_DIR
    if not src.is_dir():
        return
    shutil.copytree(src, dest_root / MODULES_DIR, dirs_exist_ok=True)


def append_log(root: str | os.PathLike[str], log_name: str, message: str) -> None:
    """Append a timestamped line to ``Logs/<log_name>``. Failures are swallowed."""
    try:
        log_dir = Path(root) / LOGS_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        with open(log_dir / log_name, "a", encoding="utf-8") as fh:
            fh.write(f"{utc_timestamp()} {message}\n")
    except OSError as exc:
        logger.debug("Log append to %s failed: %s", log_name, exc)
