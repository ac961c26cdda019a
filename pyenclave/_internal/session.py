"""Activation state machine.

:class:`SessionController` owns the only piece of session state, the
:class:`ActiveSession`, and is its only writer. Activation snapshots the live
search path, installs the environment's protected path, arms the guard and the
call hooks; deactivation undoes each step in reverse, restoring the search path
only after the guard can no longer rewrite it.
"""

from __future__ import annotations

import atexit
import logging
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..errors import CorruptedEnvironmentError
from ..interfaces import SearchPathTarget
from ..path_helpers import EnvironmentVariableTarget
from .environment import ACTIVATION_LOG, append_log, layout_is_intact
from .guard import PathGuard
from .interception import CallInterceptor
from .registry import EnvironmentRegistry
from .search_path import SearchPathManager

logger = logging.getLogger(__name__)

_UNSET = object()


class SessionState(Enum):
    DEACTIVATED = "deactivated"
    ACTIVATED = "activated"


class Scope(str, Enum):
    """Where an activation is visible.

    ``SESSION`` affects only this interpreter. ``GLOBAL`` also exports the
    protected path to the controller's global target (``PYTHONPATH`` by
    default) so child processes inherit it.
    """

    SESSION = "Session"
    GLOBAL = "Global"


@dataclass(frozen=True)
class ActiveSession:
    environment_name: str
    environment_path: str
    original_search_path: tuple[str, ...]
    protected_search_path: tuple[str, ...]
    scope: Scope = Scope.SESSION
    previous_global_path: tuple[str, ...] = ()


class PromptDecorator:
    """Prefixes the interactive prompt with the active environment name."""

    def __init__(self) -> None:
        self._saved: dict[str, object] = {}

    def apply(self, name: str) -> None:
        for attr, default in (("ps1", ">>> "), ("ps2", "... ")):
            if attr not in self._saved:
                self._saved[attr] = getattr(sys, attr, _UNSET)
            base = self._saved[attr]
            setattr(sys, attr, f"({name}) {base if base is not _UNSET else default}")

    def restore(self) -> None:
        for attr, value in self._saved.items():
            if value is _UNSET:
                if hasattr(sys, attr):
                    delattr(sys, attr)
            else:
                setattr(sys, attr, value)
        self._saved.clear()


class SessionController:
    def __init__(
        self,
        registry: EnvironmentRegistry,
        path_manager: SearchPathManager,
        guard: PathGuard,
        interceptor: CallInterceptor,
        prompt: PromptDecorator | None = None,
        global_target: SearchPathTarget | None = None,
    ) -> None:
        self.registry = registry
        self.path_manager = path_manager
        self.guard = guard
        self.interceptor = interceptor
        self.prompt = prompt or PromptDecorator()
        self.global_target = global_target or EnvironmentVariableTarget("PYTHONPATH")
        self._session: ActiveSession | None = None

    @property
    def session(self) -> ActiveSession | None:
        return self._session

    @property
    def state(self) -> SessionState:
        return SessionState.ACTIVATED if self._session is not None else SessionState.DEACTIVATED

    def activate(self, name: str, scope: Scope | str = Scope.SESSION) -> ActiveSession:
        """Activate ``name``, replacing any active environment.

        Raises:
            NotFoundError: ``name`` is not registered.
            CorruptedEnvironmentError: Its directory is missing from disk.
        """
        scope = Scope(scope)
        if self._session is not None:
            logger.warning(
                "[PyEnclave][Session] '%s' is active; deactivating it before activating '%s'",
                self._session.environment_name,
                name,
            )
            self.deactivate()

        record = self.registry.get(name)
        root = Path(record["path"])
        if not layout_is_intact(root):
            raise CorruptedEnvironmentError(f"Environment '{record['name']}' directory {root} is missing or incomplete")

        original: list[str] | None = None
        previous_global: list[str] | None = None
        try:
            original = self.path_manager.snapshot()
            protected = self.path_manager.compute(
                root, record["settings"].get("includeSystemPaths", False), original
            )
            self.path_manager.install(protected)
            self.guard.enable(protected)
            self.interceptor.enable_hooks()
            if scope is Scope.GLOBAL:
                previous_global = self.global_target.read()
                self.global_target.write(protected)
            session = ActiveSession(
                environment_name=record["name"],
                environment_path=str(root),
                original_search_path=tuple(original),
                protected_search_path=tuple(protected),
                scope=scope,
                previous_global_path=tuple(previous_global or ()),
            )
            self._session = session
            self.prompt.apply(record["name"])
        except Exception as exc:
            logger.error("[PyEnclave][Session] Activation of '%s' failed: %s; rolling back", name, exc)
            self._rollback(original, previous_global)
            raise

        atexit.register(self._shutdown)

        append_log(root, ACTIVATION_LOG, f"ACTIVATE {session.environment_name} scope={scope.value}")
        logger.info("[PyEnclave][Session] Activated '%s'", session.environment_name)
        return session

    def _rollback(self, original: list[str] | None, previous_global: list[str] | None) -> None:
        steps = (
            ("hooks", self.interceptor.disable_hooks),
            ("guard", self.guard.disable),
            ("search path", lambda: original is not None and self.path_manager.restore_original(original)),
            (
                self.global_target.description,
                lambda: previous_global is not None and self.global_target.write(previous_global),
            ),
            ("prompt", self.prompt.restore),
        )
        for label, step in steps:
            try:
                step()
            except Exception as exc:
                logger.warning("[PyEnclave][Session] Rollback of %s failed: %s", label, exc)
        self._session = None

    def deactivate(self) -> bool:
        """Deactivate the active environment. Returns False if none was active."""
        session = self._session
        if session is None:
            logger.warning("[PyEnclave][Session] No environment is active")
            return False

        try:
            self.interceptor.disable_hooks()
            self.guard.disable()
            self.path_manager.restore_original(list(session.original_search_path))
            if session.scope is Scope.GLOBAL:
                self.global_target.write(list(session.previous_global_path))
            self.prompt.restore()
            append_log(session.environment_path, ACTIVATION_LOG, f"DEACTIVATE {session.environment_name}")
        except Exception as exc:
            logger.error("[PyEnclave][Session] Deactivation of '%s' failed: %s", session.environment_name, exc)
            self._emergency_cleanup(session)
            raise
        finally:
            self._session = None
            atexit.unregister(self._shutdown)

        logger.info("[PyEnclave][Session] Deactivated '%s'", session.environment_name)
        return True

    def _emergency_cleanup(self, session: ActiveSession) -> None:
        for step in (
            self.interceptor.disable_hooks,
            self.guard.disable,
            lambda: self.path_manager.restore_original(list(session.original_search_path)),
            lambda: session.scope is Scope.GLOBAL and self.global_target.write(list(session.previous_global_path)),
            self.prompt.restore,
        ):
            try:
                step()
            except Exception as exc:
                logger.debug("[PyEnclave][Session] Emergency cleanup step failed: %s", exc)

    def _shutdown(self) -> None:
        if self._session is None:
            return
        try:
            self.deactivate()
        except Exception as exc:
            logger.debug("[PyEnclave][Session] Deactivation at exit failed: %s", exc)
