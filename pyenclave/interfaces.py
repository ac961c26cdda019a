"""Public protocols for pyenclave collaborators.

These interfaces define the contract between the pyenclave core and the pieces
it treats as external: the package repository client and the search path it
protects. They use structural typing so test doubles and alternative backends
can be supplied without inheriting from concrete classes.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable


@runtime_checkable
class PackageRepository(Protocol):
    """Interface for finding and fetching packages from a remote index."""

    def find(
        self,
        name: str,
        version: str | None = None,
        repository: str = "default",
        allow_prerelease: bool = False,
    ) -> str:
        """Return the exact version that would be installed for ``name``.

        Raises:
            LookupError: If no matching version exists in ``repository``.
        """

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
        """Fetch ``name==version`` (and its dependencies) into ``destination``.

        ``destination`` is a flat target directory; nothing outside it may be
        written.
        """


@runtime_checkable
class SearchPathTarget(Protocol):
    """A process-global, ordered package search path."""

    @property
    def description(self) -> str:
        """Human-readable name for logs (e.g., ``"sys.path"``)."""

    def read(self) -> list[str]:
        """Return a copy of the live search path."""

    def write(self, entries: list[str]) -> None:
        """Replace the live search path with ``entries``."""
