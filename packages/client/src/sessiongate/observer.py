"""Logout notification — a process-wide event with no payload.

Learn: anything that has to react when the session goes away (redirect to a
login screen, drop cached data, stop pollers) subscribes here. The
coordinator and client guarantee one notify() per logout, however many
requests were waiting when the refresh failed.

Subscribers may be plain functions or coroutines. A subscriber that raises
is logged and skipped; the others still run.
"""

import asyncio
import inspect
from typing import Awaitable, Callable, Union

import structlog

logger = structlog.get_logger()

# ─── Session event names (structlog event keys) ──────────

SESSION_LOGGED_IN = "session.logged_in"
SESSION_REFRESH_STARTED = "session.refresh_started"
SESSION_REFRESHED = "session.refreshed"
SESSION_REFRESH_TRANSIENT_FAILURE = "session.refresh_transient_failure"
SESSION_EXPIRED = "session.expired"
SESSION_LOGGED_OUT = "session.logged_out"
SESSION_RESTORED = "session.restored"

LogoutCallback = Callable[[], Union[None, Awaitable[None]]]


class LogoutNotifier:
    """Fan-out of the logout event to every subscriber."""

    def __init__(self):
        self._subscribers: list[LogoutCallback] = []
        self.notifications = 0

    def subscribe(self, callback: LogoutCallback) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def notify(self) -> None:
        self.notifications += 1
        logger.info(SESSION_LOGGED_OUT, subscribers=len(self._subscribers))

        for callback in list(self._subscribers):
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "session.logout_subscriber_failed",
                    subscriber=getattr(callback, "__qualname__", repr(callback)),
                )
