"""Single-flight handling of session expiry.

Many requests can be in flight when a token expires, and each of them will
see the expiry signal. The coordinator makes sure the side effects (wipe the
session store, tell the operator, go to login) happen once per episode.

An episode starts with the first report and ends after a quiet window; a
report after that starts a new episode, so a later session that expires is
handled again instead of being suppressed by a stale flag.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from opslog.cli.utils.storage import SessionStore


logger = logging.getLogger(__name__)

DEFAULT_QUIET_WINDOW = 1.0
DEFAULT_EXPIRY_MESSAGE = "Session expired, redirecting to login..."


def _log_notice(message: str) -> None:
    logger.warning(message)


def _log_navigation() -> None:
    logger.warning("Login required: run `opslog login` to start a new session")


class SessionExpiryCoordinator:
    """Gate the redirect-to-login side effects to one run per episode.

    Args:
        store: Session store wiped when an episode starts
        notifier: Called with the user-visible notice
        navigator: Called to move the operator to the login entry point
        quiet_window: Seconds after the triggering report during which
            further reports are ignored
        clock: Monotonic time source
    """

    def __init__(
        self,
        store: SessionStore,
        notifier: Optional[Callable[[str], None]] = None,
        navigator: Optional[Callable[[], None]] = None,
        quiet_window: float = DEFAULT_QUIET_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.notifier = notifier or _log_notice
        self.navigator = navigator or _log_navigation
        self.quiet_window = quiet_window
        self._clock = clock
        self._redirecting = False
        self._last_transition: Optional[float] = None
        self.episodes = 0

    @property
    def last_transition(self) -> Optional[float]:
        return self._last_transition

    @property
    def redirect_in_progress(self) -> bool:
        """True while an episode is open; clears itself after the quiet window."""
        if self._redirecting and self._last_transition is not None:
            if self._clock() - self._last_transition >= self.quiet_window:
                self._redirecting = False
                self._last_transition = self._clock()
        return self._redirecting

    def report_expiry(self, message: Optional[str] = None) -> bool:
        """Handle an expiry signal.

        Returns:
            True if this call started a new episode and ran the side effects,
            False if an episode was already in progress.
        """
        if self.redirect_in_progress:
            logger.debug("Session expiry already being handled, ignoring: %s", message)
            return False

        self._redirecting = True
        self._last_transition = self._clock()
        self.episodes += 1
        logger.info("Session expiry episode %d started", self.episodes)

        # 1. wipe persisted session state
        self.store.clear_all()
        # 2. tell the operator
        self.notifier(message or DEFAULT_EXPIRY_MESSAGE)
        # 3. go to login
        self.navigator()
        return True

    def reset(self) -> None:
        """Close any open episode. Called after a successful login."""
        if self._redirecting:
            logger.debug("Session expiry episode closed by login")
        self._redirecting = False
        self._last_transition = self._clock()


_COORDINATOR: Optional[SessionExpiryCoordinator] = None


def install_coordinator(coordinator: SessionExpiryCoordinator) -> SessionExpiryCoordinator:
    """Make ``coordinator`` the process-wide instance (application startup)."""
    global _COORDINATOR
    _COORDINATOR = coordinator
    return coordinator


def get_coordinator(store: Optional[SessionStore] = None) -> SessionExpiryCoordinator:
    """Return the process-wide coordinator, creating a default one on first use."""
    global _COORDINATOR
    if _COORDINATOR is None:
        _COORDINATOR = SessionExpiryCoordinator(store or SessionStore())
    return _COORDINATOR


def shutdown_coordinator() -> None:
    """Forget the process-wide coordinator (full application reset)."""
    global _COORDINATOR
    _COORDINATOR = None
