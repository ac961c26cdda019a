from __future__ import annotations

import logging
import os
from collections.abc import Sequence

from ..interfaces import SearchPathTarget
from ..path_helpers import SysPathTarget, compute_search_path

logger = logging.getLogger(__name__)


class SearchPathManager:
    """Computes, installs and restores the search path of a target."""

    def __init__(self, target: SearchPathTarget | None = None) -> None:
        self.target: SearchPathTarget = target if target is not None else SysPathTarget()

    def snapshot(self) -> list[str]:
        return self.target.read()

    def compute(
        self,
        environment_path: str | os.PathLike[str],
        include_system_paths: bool,
        original: Sequence[str] | None = None,
    ) -> list[str]:
        if original is None:
            original = self.target.read()
        return compute_search_path(environment_path, include_system_paths, original=original)

    def install(self, entries: Sequence[str]) -> None:
        self.target.write(list(entries))
        logger.debug("[PyEnclave][Path] Installed %d entries into %s", len(entries), self.target.description)

    def restore_original(self, saved: Sequence[str] | None) -> bool:
        """Write ``saved`` back verbatim. Returns False if there was nothing to restore."""
        if saved is None:
            logger.warning("[PyEnclave][Path] No saved search path on record; nothing to restore")
            return False
        self.target.write(list(saved))
        logger.debug("[PyEnclave][Path] Restored original %s (%d entries)", self.target.description, len(saved))
        return True
