"""JSON-backed registry of environments.

``registry.json`` under the pyenclave home holds an array of
:class:`~pyenclave.config.EnvironmentRecord`; each environment also keeps a
``config.json`` mirror of its own record.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from ..config import EnvironmentRecord, ModuleRecord
from ..errors import CorruptedEnvironmentError, NotFoundError
from .environment import CONFIG_FILE, utc_timestamp

logger = logging.getLogger(__name__)

REGISTRY_FILE = "registry.json"


def _atomic_write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class EnvironmentRegistry:
    def __init__(self, home: str | os.PathLike[str]) -> None:
        self.home = Path(home)
        self.path = self.home / REGISTRY_FILE

    def _load(self) -> list[EnvironmentRecord]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise CorruptedEnvironmentError(f"Registry {self.path} is unreadable: {exc}") from exc
        if not isinstance(data, list):
            raise CorruptedEnvironmentError(f"Registry {self.path} must contain a JSON array")
        return data

    def _save(self, records: list[EnvironmentRecord]) -> None:
        _atomic_write_json(self.path, records)

    def all(self) -> list[EnvironmentRecord]:
        return self._load()

    def find(self, name: str) -> EnvironmentRecord | None:
        for record in self._load():
            if record["name"].lower() == name.lower():
                return record
        return None

    def get(self, name: str) -> EnvironmentRecord:
        record = self.find(name)
        if record is None:
            raise NotFoundError(f"Environment '{name}' not found")
        return record

    def put(self, record: EnvironmentRecord) -> None:
        """Insert or replace ``record`` and refresh its ``config.json`` mirror."""
        records = [r for r in self._load() if r["name"].lower() != record["name"].lower()]
        records.append(record)
        self._save(records)
        self.write_mirror(record)

    def delete(self, name: str) -> None:
        records = self._load()
        kept = [r for r in records if r["name"].lower() != name.lower()]
        if len(kept) == len(records):
            raise NotFoundError(f"Environment '{name}' not found")
        self._save(kept)

    def write_mirror(self, record: EnvironmentRecord) -> None:
        root = Path(record["path"])
        if not root.is_dir():
            return
        try:
            _atomic_write_json(root / CONFIG_FILE, record)
        except OSError as exc:
            logger.warning("Could not update %s: %s", root / CONFIG_FILE, exc)

    def record_module(self, name: str, module: str, version: str) -> EnvironmentRecord:
        record = self.get(name)
        modules = [m for m in record["modules"] if m["name"].lower() != module.lower()]
        entry: ModuleRecord = {"name": module, "version": version, "installedAt": utc_timestamp()}
        modules.append(entry)
        record["modules"] = modules
        self.put(record)
        return record

    def forget_module(self, name: str, module: str, version: str | None = None) -> EnvironmentRecord:
        record = self.get(name)
        record["modules"] = [
            m
            for m in record["modules"]
            if not (m["name"].lower() == module.lower() and (version is None or m["version"] == version))
        ]
        self.put(record)
        return record
