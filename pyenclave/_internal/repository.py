from __future__ import annotations

import logging
import re
import shutil
import subprocess
import sys
from pathlib import Path

from .environment import validate_package_spec

logger = logging.getLogger(__name__)

_PINNED_LINE = re.compile(r"^([A-Za-z0-9][A-Za-z0-9._-]*)(?:\[[^\]]*\])?==([^\s;]+)")


def _require_uv() -> str:
    uv_path = shutil.which("uv")
    if not uv_path:
        raise RuntimeError(
            "uv is required but not found. Install it with: pip install uv\n"
            "See https://github.com/astral-sh/uv for installation options."
        )
    return uv_path


def _index_args(repository: str) -> list[str]:
    if repository and repository != "default":
        return ["--index-url", repository]
    return []


class UvRepository:
    """Default :class:`~pyenclave.interfaces.PackageRepository` backed by ``uv pip``."""

    def find(
        self,
        name: str,
        version: str | None = None,
        repository: str = "default",
        allow_prerelease: bool = False,
    ) -> str:
        validate_package_spec(name)
        if version:
            validate_package_spec(version)
        requirement = f"{name}=={version}" if version else name
        cmd = [
            _require_uv(),
            "pip",
            "compile",
            "-",
            "--no-deps",
            "--no-header",
            "--no-annotate",
            "--quiet",
            "--python",
            sys.executable,
        ]
        cmd += _index_args(repository)
        if allow_prerelease:
            cmd += ["--prerelease", "allow"]

        result = subprocess.run(  # noqa: S603  # Trusted: validated uv compile cmd
            cmd, input=requirement + "\n", capture_output=True, text=True, check=False
        )
        if result.returncode != 0:
            raise LookupError(f"Package '{requirement}' not found in {repository}: {result.stderr.strip()}")
        for line in result.stdout.splitlines():
            match = _PINNED_LINE.match(line.strip())
            if match:
                return match.group(2)
        raise LookupError(f"Package '{requirement}' not found in {repository}")

    def save(
        self,
        name: str,
        version: str,
        destination: Path,
        repository: str = "default",
        force: bool = False,
        allow_prerelease: bool = False,
        accept_license: bool = False,
    ) -> None:
        validate_package_spec(name)
        validate_package_spec(version)
        destination.mkdir(parents=True, exist_ok=True)
        if accept_license:
            logger.debug("License acceptance is implicit for index installs (%s)", name)

        cache_dir = destination.parent / "Cache"
        cache_dir.mkdir(exist_ok=True)
        cmd = [
            _require_uv(),
            "pip",
            "install",
            "--python",
            sys.executable,
            "--target",
            str(destination),
            "--cache-dir",
            str(cache_dir),
            f"{name}=={version}",
        ]
        cmd += _index_args(repository)
        if force:
            cmd.append("--reinstall")
        if allow_prerelease:
            cmd += ["--prerelease", "allow"]

        with subprocess.Popen(  # noqa: S603  # Trusted: validated uv install cmd
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
        ) as proc:
            assert proc.stdout is not None
            output_lines: list[str] = []
            for line in proc.stdout:
                clean = line.rstrip()
                output_lines.append(clean)
                logger.debug("[uv] %s", clean)
            return_code = proc.wait()

        if return_code != 0:
            detail = "\n".join(output_lines) or "(no output)"
            raise RuntimeError(f"Install failed for {name}=={version}: {detail}")
