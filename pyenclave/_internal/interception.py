"""Guarded entry points for the two sanctioned search-path mutators.

Importing and installing packages are the only operations allowed to change the
search path while an environment is active. Rather than patching
``builtins.__import__``, the session routes every such call through
:meth:`CallInterceptor.guarded_import` and :meth:`CallInterceptor.guarded_install`,
which open a guard bypass window before delegating.
"""

from __future__ import annotations

import functools
import logging
import time
from typing import Any, Callable

from ..config import DEFAULT_IMPORT_BYPASS, DEFAULT_INSTALL_BYPASS
from .guard import PathGuard

logger = logging.getLogger(__name__)


class CallInterceptor:
    def __init__(
        self,
        guard: PathGuard,
        import_fn: Callable[..., Any],
        install_fn: Callable[..., Any],
        import_bypass: float = DEFAULT_IMPORT_BYPASS,
        install_bypass: float = DEFAULT_INSTALL_BYPASS,
    ) -> None:
        self.guard = guard
        self.import_bypass = import_bypass
        self.install_bypass = install_bypass
        self._originals: dict[str, Callable[..., Any]] = {
            "import": import_fn,
            "install": install_fn,
        }
        self._wrappers: dict[str, Callable[..., Any]] = {}

    @property
    def hooks_enabled(self) -> bool:
        return bool(self._wrappers)

    def original(self, operation: str) -> Callable[..., Any]:
        """The unwrapped ``"import"`` or ``"install"`` callable."""
        return self._originals[operation]

    def enable_hooks(self) -> None:
        if self._wrappers:
            logger.debug("[PyEnclave][Hooks] Already enabled")
            return
        self._wrappers = {
            "import": self._wrap("import", self.import_bypass),
            "install": self._wrap("install", self.install_bypass),
        }
        logger.debug("[PyEnclave][Hooks] Enabled")

    def disable_hooks(self) -> None:
        if not self._wrappers:
            return
        self._wrappers = {}
        logger.debug("[PyEnclave][Hooks] Disabled")

    def _wrap(self, operation: str, bypass: float) -> Callable[..., Any]:
        original = self.original(operation)

        @functools.wraps(original)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            self.guard.request_bypass(bypass)
            started = time.monotonic()
            try:
                return original(*args, **kwargs)
            finally:
                elapsed = time.monotonic() - started
                if elapsed > bypass:
                    logger.warning(
                        "[PyEnclave][Hooks] %s took %.1fs, longer than its %.1fs bypass; "
                        "search-path changes made after expiry may have been reverted",
                        operation,
                        elapsed,
                        bypass,
                    )

        return wrapper

    def _dispatch(self, operation: str) -> Callable[..., Any]:
        return self._wrappers.get(operation) or self.original(operation)

    def guarded_import(self, *args: Any, **kwargs: Any) -> Any:
        """Import a package, opening a bypass window while hooks are enabled."""
        return self._dispatch("import")(*args, **kwargs)

    def guarded_install(self, *args: Any, **kwargs: Any) -> Any:
        """Install a package, opening a bypass window while hooks are enabled."""
        return self._dispatch("install")(*args, **kwargs)
