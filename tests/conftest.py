"""
Pytest configuration and fixtures.

Nothing here touches the network or the real ``sys.path``: the search path is an
in-memory list and the package repository writes small dist-info trees.
"""

import logging
import os
import shutil
import sys
from pathlib import Path

import pytest
from packaging.utils import canonicalize_name
from packaging.version import Version

from pyenclave import EnclaveManager, load_config


def pytest_configure(config):
    """Configure pytest with custom settings."""
    log_level = logging.DEBUG if config.getoption("--debug-pyenclave") else logging.INFO

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
    logging.getLogger("pyenclave").setLevel(log_level)

    custom_log_file = config.getoption("--pyenclave-log-file")
    if custom_log_file:
        file_handler = logging.FileHandler(custom_log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
            )
        )
        logging.getLogger().addHandler(file_handler)


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--debug-pyenclave",
        action="store_true",
        default=False,
        help="Enable debug logging for pyenclave (guard ticks, resolver decisions)",
    )
    parser.addoption(
        "--pyenclave-log-file",
        action="store",
        default=None,
        help="Log pyenclave debug output to specified file",
    )


class ListTarget:
    """In-memory search path used instead of the interpreter's sys.path."""

    description = "test-path"

    def __init__(self, entries=None):
        self.entries = list(entries or [])
        self.writes = 0

    def read(self):
        return list(self.entries)

    def write(self, entries):
        self.writes += 1
        self.entries = list(entries)


def write_dist(
    modules_dir,
    name,
    version,
    requires=(),
    files=None,
    top_level=None,
):
    """Write an installed distribution (``<name>-<version>.dist-info``) into ``modules_dir``.

    ``files`` maps paths relative to ``modules_dir`` to their text content. By
    default a package ``<name>/__init__.py`` exposing ``VERSION`` is written.
    """
    modules_dir = Path(modules_dir)
    modules_dir.mkdir(parents=True, exist_ok=True)
    module_name = canonicalize_name(name).replace("-", "_")
    if files is None:
        files = {f"{module_name}/__init__.py": f"VERSION = {version!r}\n"}
    if top_level is None:
        top_level = sorted({Path(rel).parts[0].split(".", 1)[0] for rel in files})

    dist_info = modules_dir / f"{module_name}-{version}.dist-info"
    dist_info.mkdir()
    metadata = ["Metadata-Version: 2.1", f"Name: {name}", f"Version: {version}"]
    metadata.extend(f"Requires-Dist: {req}" for req in requires)
    (dist_info / "METADATA").write_text("\n".join(metadata) + "\n", encoding="utf-8")
    (dist_info / "top_level.txt").write_text("\n".join(top_level) + "\n", encoding="utf-8")

    record = []
    for rel, content in files.items():
        target = modules_dir / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        record.append(f"{rel},,")
    for meta_file in ("METADATA", "top_level.txt", "RECORD"):
        record.append(f"{dist_info.name}/{meta_file},,")
    (dist_info / "RECORD").write_text("\n".join(record) + "\n", encoding="utf-8")
    return dist_info


class FakeRepository:
    """PackageRepository double backed by an in-memory catalog."""

    def __init__(self, catalog=None):
        # {name: {version: {"requires": [...], "files": {...} | None}}}
        self.catalog = catalog or {}
        self.saved = []

    def add(self, name, version, requires=(), files=None):
        self.catalog.setdefault(name, {})[version] = {"requires": list(requires), "files": files}

    def _entry(self, name):
        for key, versions in self.catalog.items():
            if canonicalize_name(key) == canonicalize_name(name):
                return key, versions
        raise LookupError(f"{name} is not in the catalog")

    def find(self, name, version=None, repository="default", allow_prerelease=False):
        _, versions = self._entry(name)
        if version is not None:
            if version not in versions:
                raise LookupError(f"{name}=={version} is not in the catalog")
            return version
        candidates = [v for v in versions if allow_prerelease or not Version(v).is_prerelease]
        if not candidates:
            raise LookupError(f"No release of {name}")
        return max(candidates, key=Version)

    def save(
        self,
        name,
        version,
        destination,
        repository="default",
        force=False,
        allow_prerelease=False,
        accept_license=False,
    ):
        key, versions = self._entry(name)
        spec = versions[version]
        module_name = canonicalize_name(key).replace("-", "_")
        for old in Path(destination).glob(f"{module_name}-*.dist-info"):
            shutil.rmtree(old)
        write_dist(destination, key, version, requires=spec["requires"], files=spec["files"])
        self.saved.append((key, version, Path(destination)))


def _existing_dirs(*paths):
    return [p for p in paths if os.path.isdir(p)]


@pytest.fixture
def make_dist():
    return write_dist


@pytest.fixture
def list_target(tmp_path):
    host_lib = tmp_path / "host-lib"
    host_site = tmp_path / "host-site"
    host_lib.mkdir()
    host_site.mkdir()
    return ListTarget(_existing_dirs(str(host_lib), str(host_site)))


@pytest.fixture
def fake_repository():
    repo = FakeRepository()
    repo.add("Pester", "5.3.0")
    repo.add("Pester", "5.5.0")
    repo.add("requests", "2.32.3", requires=["urllib3>=2"])
    repo.add("urllib3", "2.2.1")
    return repo


@pytest.fixture
def enclave_home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    monkeypatch.setenv("PYENCLAVE_HOME", str(home))
    return home


@pytest.fixture
def manager(enclave_home, fake_repository, list_target):
    config = load_config(home=str(enclave_home), guard_interval=0.05)
    mgr = EnclaveManager(config=config, repository=fake_repository, target=list_target, confirm=lambda message: True)
    yield mgr
    if mgr.active is not None:
        mgr.deactivate()
    mgr.guard.disable()
