from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TypedDict

logger = logging.getLogger(__name__)

TOOL_NAME = "pyenclave"

DEFAULT_GUARD_INTERVAL = 0.15
DEFAULT_IMPORT_BYPASS = 15.0
DEFAULT_INSTALL_BYPASS = 45.0
DEFAULT_EXPOSURE_TIMEOUT = 120.0
DEFAULT_MAX_DEPTH = 10
DEFAULT_CHILD_TIMEOUT = 300.0


class EnvironmentSettings(TypedDict):
    """Per-environment switches stored in the registry."""

    includeSystemPaths: bool
    """Append the host search path (minus user-site entries) after the environment."""

    autoActivate: bool
    """Activate this environment when :meth:`EnclaveManager.auto_activate` runs."""


class ModuleRecord(TypedDict):
    """A package installed into an environment."""

    name: str
    version: str
    installedAt: str


class EnvironmentRecord(TypedDict):
    """Registry entry for one environment (also mirrored to ``config.json``)."""

    name: str
    """Unique environment name, 1-50 characters."""

    path: str
    """Absolute root directory of the environment."""

    created: str
    """ISO-8601 UTC creation timestamp."""

    description: str

    modules: list[ModuleRecord]
    """Installed packages in installation order."""

    settings: EnvironmentSettings


class EnclaveConfig(TypedDict):
    """Process-wide tuning knobs for :class:`EnclaveManager`."""

    home: str
    """Root for ``registry.json`` and default environment directories."""

    guard_interval: float
    """Seconds between search-path reconciliation ticks."""

    import_bypass: float
    """Bypass window requested by guarded imports."""

    install_bypass: float
    """Bypass window requested by guarded installs."""

    exposure_timeout: float
    """Soft limit for system-path exposure while installing."""

    max_depth: int
    """Dependency recursion limit."""

    child_timeout: float
    """Hard limit for the child-process import worker."""


def _env_float(key: str, default: float) -> float:
    raw = os.environ.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", key, raw, default)
        return default


def default_home() -> Path:
    override = os.environ.get("PYENCLAVE_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / f".{TOOL_NAME}"


def load_config(**overrides: object) -> EnclaveConfig:
    """Build an :class:`EnclaveConfig` from ``PYENCLAVE_*`` variables and overrides."""
    config: EnclaveConfig = {
        "home": str(default_home()),
        "guard_interval": _env_float("PYENCLAVE_GUARD_INTERVAL", DEFAULT_GUARD_INTERVAL),
        "import_bypass": _env_float("PYENCLAVE_IMPORT_BYPASS", DEFAULT_IMPORT_BYPASS),
        "install_bypass": _env_float("PYENCLAVE_INSTALL_BYPASS", DEFAULT_INSTALL_BYPASS),
        "exposure_timeout": _env_float("PYENCLAVE_EXPOSURE_TIMEOUT", DEFAULT_EXPOSURE_TIMEOUT),
        "max_depth": int(_env_float("PYENCLAVE_MAX_DEPTH", DEFAULT_MAX_DEPTH)),
        "child_timeout": _env_float("PYENCLAVE_CHILD_TIMEOUT", DEFAULT_CHILD_TIMEOUT),
    }
    for key, value in overrides.items():
        if key not in config:
            raise ValueError(f"Unknown config key '{key}'")
        config[key] = value  # type: ignore[literal-required]
    return config
