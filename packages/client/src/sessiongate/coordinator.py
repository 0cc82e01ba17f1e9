"""Refresh coordinator — single-flight credential refresh.

Learn: when N requests hit a 401 at the same time, exactly one of them
starts a refresh. The rest queue up behind it as waiters. When the refresh
resolves, every waiter gets the same outcome in one pass, in the order they
arrived:

    success              → Authenticated, every waiter gets the new credential
    expired / revoked    → Anonymous, every waiter gets SessionExpired, one logout
    network failure      → Authenticated (stale credential), every waiter gets
                           RefreshTransientFailure, no logout

Concurrency model: asyncio, one event loop. Every method that touches the
session inspects the phase and commits the transition without an `await`
in between, so each transition is its own critical section. The only
suspension points are the refresh call (inside its own task) and a waiter
parked on its future.

Waiters are one Future each (not a shared one) so a cancelled caller can be
taken out of the queue without disturbing the refresh or anyone else.

This class is the only writer of SessionState. Login, logout, and restore
from persistence all go through it so a refresh in flight is never
overwritten behind its back.
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx
import structlog

from sessiongate.errors import (
    RefreshError,
    RefreshErrorKind,
    RefreshTransientFailure,
    SessionExpired,
    Unauthenticated,
)
from sessiongate.observer import (
    SESSION_EXPIRED,
    SESSION_LOGGED_IN,
    SESSION_REFRESH_STARTED,
    SESSION_REFRESH_TRANSIENT_FAILURE,
    SESSION_REFRESHED,
    SESSION_RESTORED,
    LogoutNotifier,
)
from sessiongate.refresher import CredentialRefresher, NewAccess
from sessiongate.state import (
    Identity,
    LoggedOut,
    LoginSucceeded,
    Phase,
    RefreshAborted,
    RefreshFailed,
    RefreshStarted,
    RefreshSucceeded,
    SessionSnapshot,
    SessionState,
)

logger = structlog.get_logger()

CommitHook = Callable[[SessionSnapshot], Awaitable[None]]


@dataclass(frozen=True)
class FailedRequest:
    """What the gateway knows about the request that just got a 401."""

    request: Optional[httpx.Request] = None
    credential: Optional[str] = None  # access credential the request was sent with


class RefreshCoordinator:
    def __init__(
        self,
        state: SessionState,
        refresher: CredentialRefresher,
        notifier: Optional[LogoutNotifier] = None,
        on_commit: Optional[CommitHook] = None,
    ):
        self.state = state
        self.refresher = refresher
        self.notifier = notifier or LogoutNotifier()
        self._on_commit = on_commit
        self._waiters: deque[asyncio.Future] = deque()
        self._in_flight: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self.refresh_count = 0

    @property
    def refreshing(self) -> bool:
        return self._in_flight is not None

    @property
    def waiter_count(self) -> int:
        return len(self._waiters)

    # ─── The gate ─────────────────────────────────────────

    async def ensure_valid_credential(self, failed: Optional[FailedRequest] = None) -> str:
        """Return an access credential worth retrying with, refreshing if needed.

        Raises Unauthenticated, SessionExpired or RefreshTransientFailure.
        """
        snapshot = self.state.read()

        if snapshot.phase is Phase.ANONYMOUS:
            raise Unauthenticated()

        if snapshot.phase is Phase.AUTHENTICATED:
            if failed is not None and failed.credential != snapshot.access_credential:
                # Sent before the last refresh (or login) committed
                logger.debug("coordinator.credential_already_replaced")
                return snapshot.access_credential

            if not snapshot.refresh_credential:
                committed = self.state.transition(LoggedOut())
                logger.info(SESSION_EXPIRED, reason="no_refresh_credential")
                await self._commit(committed)
                await self.notifier.notify()
                raise Unauthenticated("No refresh credential available")

            committed = self.state.transition(RefreshStarted())
            self.refresh_count += 1
            self._in_flight = asyncio.create_task(
                self._run_refresh(committed.refresh_credential),
                name="sessiongate-refresh",
            )
            self._tasks.add(self._in_flight)
            self._in_flight.add_done_callback(self._tasks.discard)
            logger.info(SESSION_REFRESH_STARTED, refresh_count=self.refresh_count)

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await waiter
        except asyncio.CancelledError:
            try:
                self._waiters.remove(waiter)
            except ValueError:
                pass  # already drained
            raise

    async def _run_refresh(self, refresh_credential: str) -> None:
        try:
            outcome = await self.refresher.refresh(refresh_credential)
        except RefreshError as e:
            outcome = e
        except asyncio.CancelledError:
            # Whoever cancelled us (logout, login, aclose) already settled the waiters
            raise
        except Exception as e:
            logger.exception("coordinator.refresher_crashed")
            outcome = RefreshError(RefreshErrorKind.NETWORK_FAILURE, str(e) or type(e).__name__)

        committed, logout = self._settle(outcome)
        await self._commit(committed)
        if logout:
            await self.notifier.notify()

    def _settle(self, outcome) -> tuple[SessionSnapshot, bool]:
        """Commit the refresh outcome and resume every waiter. No awaits in here."""
        self._in_flight = None
        waiters, self._waiters = self._waiters, deque()

        if isinstance(outcome, NewAccess):
            committed = self.state.transition(RefreshSucceeded(outcome.access, outcome.refresh))
            if committed.phase is Phase.AUTHENTICATED:
                logger.info(SESSION_REFRESHED, waiters=len(waiters))
                for waiter in waiters:
                    if not waiter.done():
                        waiter.set_result(committed.access_credential)
                return committed, False
            # An empty credential collapsed the session
            _fail_all(waiters, SessionExpired)
            logger.warning(SESSION_EXPIRED, reason="empty_credential", waiters=len(waiters))
            return committed, True

        if outcome.recoverable:
            committed = self.state.transition(RefreshAborted())
            _fail_all(waiters, RefreshTransientFailure)
            logger.warning(
                SESSION_REFRESH_TRANSIENT_FAILURE,
                detail=outcome.detail,
                waiters=len(waiters),
            )
            return committed, False

        committed = self.state.transition(RefreshFailed())
        _fail_all(waiters, SessionExpired)
        logger.warning(
            SESSION_EXPIRED,
            reason=outcome.kind.value,
            status=outcome.status_code,
            waiters=len(waiters),
        )
        return committed, True

    # ─── Other writers ────────────────────────────────────

    async def login(
        self,
        access: str,
        refresh: Optional[str] = None,
        identity: Optional[Identity] = None,
    ) -> SessionSnapshot:
        """Install a freshly issued credential pair.

        A refresh still in flight is abandoned and its waiters retry with
        the new credential.
        """
        waiters = self._abandon_refresh()
        committed = self.state.transition(LoginSucceeded(access, refresh, identity))
        if committed.phase is Phase.AUTHENTICATED:
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_result(committed.access_credential)
            logger.info(SESSION_LOGGED_IN, user_id=identity.id if identity else None)
        else:
            _fail_all(waiters, Unauthenticated)
        await self._commit(committed)
        return committed

    async def restore(self, snapshot: SessionSnapshot) -> SessionSnapshot:
        """Rehydrate from persistence at startup. Does not write back."""
        if self.state.phase is not Phase.ANONYMOUS:
            return self.state.read()
        committed = self.state.transition(
            LoginSucceeded(
                snapshot.access_credential,
                snapshot.refresh_credential,
                snapshot.identity,
            )
        )
        logger.info(
            SESSION_RESTORED,
            phase=committed.phase.value,
            has_refresh_credential=committed.refresh_credential is not None,
        )
        return committed

    async def logout(self) -> bool:
        """Drop the session. Returns False if there was nothing to drop.

        Waiters of an in-flight refresh get SessionExpired and the late
        refresh result is discarded. Notifies once.
        """
        if self.state.phase is Phase.ANONYMOUS:
            return False
        waiters = self._abandon_refresh()
        committed = self.state.transition(LoggedOut())
        _fail_all(waiters, SessionExpired)
        await self._commit(committed)
        await self.notifier.notify()
        return True

    async def aclose(self) -> None:
        """Cancel an in-flight refresh. Waiters get RefreshTransientFailure."""
        task = self._in_flight
        waiters = self._abandon_refresh()
        _fail_all(waiters, RefreshTransientFailure)
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _abandon_refresh(self) -> list[asyncio.Future]:
        """Cancel the in-flight refresh (if any) and hand back its waiters."""
        task, self._in_flight = self._in_flight, None
        waiters, self._waiters = list(self._waiters), deque()
        if task is not None:
            task.cancel()
            if self.state.phase is Phase.REFRESHING:
                self.state.transition(RefreshAborted())
            logger.info("coordinator.refresh_abandoned", waiters=len(waiters))
        return waiters

    async def _commit(self, snapshot: SessionSnapshot) -> None:
        if self._on_commit is None:
            return
        try:
            await self._on_commit(snapshot)
        except Exception:
            # The in-memory session is authoritative; a failed write is not fatal
            logger.exception("coordinator.persist_failed", phase=snapshot.phase.value)


def _fail_all(waiters, error_cls) -> None:
    for waiter in waiters:
        if not waiter.done():
            waiter.set_exception(error_cls())
