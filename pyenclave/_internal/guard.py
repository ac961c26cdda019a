"""Background reconciliation of the protected search path.

Code outside the session's call stack (``.pth`` processing, ``site.addsitedir``,
import hooks installed by third-party packages) can rewrite the search path at
any time. While armed, :class:`PathGuard` compares the live path with the
protected one on a short interval and overwrites any drift. Operations the
session initiates itself open a bypass window first, during which drift is
tolerated; the window closes on an independent timer.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Sequence
from enum import Enum

from ..config import DEFAULT_GUARD_INTERVAL
from ..interfaces import SearchPathTarget

logger = logging.getLogger(__name__)


class GuardState(Enum):
    """Lifecycle state of a :class:`PathGuard`."""

    INACTIVE = "inactive"
    ARMED = "armed"
    BYPASS = "bypass"


class PathGuard:
    def __init__(self, target: SearchPathTarget, interval: float = DEFAULT_GUARD_INTERVAL) -> None:
        if interval <= 0:
            raise ValueError(f"Guard interval must be positive, got {interval}")
        self.target = target
        self.interval = interval
        self.restore_count = 0

        self._lock = threading.RLock()
        self._state = GuardState.INACTIVE
        self._protected: list[str] | None = None
        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None
        self._bypass_timer: threading.Timer | None = None
        self._bypass_deadline: float | None = None
        self._bypass_token: object | None = None

    @property
    def state(self) -> GuardState:
        with self._lock:
            return self._state

    @property
    def protected_path(self) -> list[str] | None:
        with self._lock:
            return list(self._protected) if self._protected is not None else None

    def bypass_remaining(self) -> float:
        """Seconds left in the current bypass window (0.0 when none is open)."""
        with self._lock:
            if self._state is not GuardState.BYPASS or self._bypass_deadline is None:
                return 0.0
            return max(0.0, self._bypass_deadline - time.monotonic())

    def enable(self, protected: Sequence[str]) -> bool:
        """Arm the guard for ``protected``. Returns False if it was already armed."""
        with self._lock:
            if self._state is not GuardState.INACTIVE:
                logger.warning("[PyEnclave][Guard] Search path is already protected; ignoring enable()")
                return False
            self._protected = list(protected)
            self._state = GuardState.ARMED
            self.restore_count = 0
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run,
                args=(stop_event,),
                name="pyenclave-path-guard",
                daemon=True,
            )
            self._stop_event = stop_event
            self._thread = thread
            thread.start()
        logger.debug(
            "[PyEnclave][Guard] Armed on %s (%d entries, every %.3fs)",
            self.target.description,
            len(protected),
            self.interval,
        )
        return True

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval):
            self.check()

    def check(self) -> bool:
        """Run one reconciliation tick. Returns True if drift was reverted."""
        with self._lock:
            if self._state is not GuardState.ARMED or self._protected is None:
                return False
            try:
                live = self.target.read()
                if live == self._protected:
                    return False
                self.target.write(list(self._protected))
            except Exception as exc:
                logger.warning("[PyEnclave][Guard] Could not restore protected search path: %s", exc)
                return False
            self.restore_count += 1
        logger.info("[PyEnclave][Guard] Reverted unauthorized change to %s", self.target.description)
        return True

    def request_bypass(self, duration: float) -> bool:
        """Suspend reconciliation for ``duration`` seconds.

        Overlapping requests do not stack: whichever deadline is later is kept.
        Returns False when the guard is not armed.
        """
        with self._lock:
            if self._state is GuardState.INACTIVE:
                logger.debug("[PyEnclave][Guard] Bypass requested while inactive; ignoring")
                return False
            deadline = time.monotonic() + duration
            if (
                self._state is GuardState.BYPASS
                and self._bypass_deadline is not None
                and self._bypass_deadline >= deadline
            ):
                return True
            if self._bypass_timer is not None:
                self._bypass_timer.cancel()
            token = object()
            timer = threading.Timer(duration, self._expire_bypass, args=(token,))
            timer.daemon = True
            self._bypass_token = token
            self._bypass_timer = timer
            self._bypass_deadline = deadline
            self._state = GuardState.BYPASS
            timer.start()
        logger.debug("[PyEnclave][Guard] Bypass window open for %.1fs", duration)
        return True

    def _expire_bypass(self, token: object) -> None:
        with self._lock:
            if token is not self._bypass_token or self._state is not GuardState.BYPASS:
                return
            self._state = GuardState.ARMED
            self._bypass_timer = None
            self._bypass_deadline = None
            self._bypass_token = None
        logger.debug("[PyEnclave][Guard] Bypass window expired; guard re-armed")

    def disable(self) -> None:
        """Stop reconciliation and forget the protected path. Safe to call repeatedly."""
        with self._lock:
            if self._bypass_timer is not None:
                self._bypass_timer.cancel()
            stop_event = self._stop_event
            thread = self._thread
            was_active = self._state is not GuardState.INACTIVE
            self._state = GuardState.INACTIVE
            self._protected = None
            self._stop_event = None
            self._thread = None
            self._bypass_timer = None
            self._bypass_deadline = None
            self._bypass_token = None

        if stop_event is not None:
            stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(1.0, self.interval * 5))
        if was_active:
            logger.debug("[PyEnclave][Guard] Disarmed")
