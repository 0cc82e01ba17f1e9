"""Session state — the current credential pair and its lifecycle phase.

Learn: this module is pure data plus transition rules. It holds no locks
and never awaits. Safety comes from the RefreshCoordinator being the only
code that issues refresh events, and from every transition running without
a suspension point between "inspect phase" and "commit".

    Anonymous ──LoginSucceeded──▶ Authenticated ──RefreshStarted──▶ Refreshing
        ▲                              ▲  │                            │
        │                              │  └──────LoggedOut─────┐       │
        │                              ├──RefreshSucceeded─────┼───────┤
        │                              └──RefreshAborted───────┼───────┤
        └──────────────────────────────────────────────────────┴─RefreshFailed / LoggedOut

INVALID never survives a transition: a login without an access credential
collapses straight to ANONYMOUS.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel

from sessiongate.errors import InvalidTransition


class Phase(str, Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    INVALID = "invalid"


class Identity(BaseModel):
    """Minimal user snapshot. Used by callers, never by the coordinator."""

    id: str
    role: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None

    model_config = {"frozen": True}


@dataclass(frozen=True)
class SessionSnapshot:
    phase: Phase = Phase.ANONYMOUS
    access_credential: Optional[str] = None
    refresh_credential: Optional[str] = None
    identity: Optional[Identity] = None

    @property
    def authenticated(self) -> bool:
        return self.phase in (Phase.AUTHENTICATED, Phase.REFRESHING)

    def __repr__(self) -> str:
        # Never leak tokens through repr() in logs or tracebacks
        return (
            f"SessionSnapshot(phase={self.phase.value}, "
            f"access={'set' if self.access_credential else None}, "
            f"refresh={'set' if self.refresh_credential else None}, "
            f"identity={self.identity.id if self.identity else None})"
        )


ANONYMOUS = SessionSnapshot()


# ─── Events ──────────────────────────────────────────────


@dataclass(frozen=True)
class LoginSucceeded:
    access: str
    refresh: Optional[str] = None
    identity: Optional[Identity] = None


@dataclass(frozen=True)
class RefreshStarted:
    pass


@dataclass(frozen=True)
class RefreshSucceeded:
    access: str
    refresh: Optional[str] = None  # rotated refresh credential, if the server sent one


@dataclass(frozen=True)
class RefreshAborted:
    """Recoverable refresh failure: back to Authenticated with the stale credential."""


@dataclass(frozen=True)
class RefreshFailed:
    pass


@dataclass(frozen=True)
class LoggedOut:
    pass


SessionEvent = Union[
    LoginSucceeded,
    RefreshStarted,
    RefreshSucceeded,
    RefreshAborted,
    RefreshFailed,
    LoggedOut,
]


# ─── State machine ───────────────────────────────────────


class SessionState:
    """Holds the single process-wide session snapshot.

    read() is safe from anywhere. transition() is the only mutator.
    """

    def __init__(self, initial: SessionSnapshot = ANONYMOUS):
        self._snapshot = _normalize(initial)

    def read(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def phase(self) -> Phase:
        return self._snapshot.phase

    def transition(self, event: SessionEvent) -> SessionSnapshot:
        """Apply an event and return the committed snapshot.

        Raises InvalidTransition if the event is not accepted in the
        current phase. The snapshot is unchanged in that case.
        """
        current = self._snapshot
        phase = current.phase

        if isinstance(event, LoggedOut):
            nxt = ANONYMOUS

        elif isinstance(event, LoginSucceeded):
            if phase is Phase.REFRESHING:
                raise InvalidTransition(phase, event)
            nxt = SessionSnapshot(
                phase=Phase.AUTHENTICATED if event.access else Phase.INVALID,
                access_credential=event.access,
                refresh_credential=event.refresh,
                identity=event.identity,
            )

        elif isinstance(event, RefreshStarted):
            if phase is not Phase.AUTHENTICATED or not current.refresh_credential:
                raise InvalidTransition(phase, event)
            nxt = replace(current, phase=Phase.REFRESHING)

        elif isinstance(event, RefreshSucceeded):
            if phase is not Phase.REFRESHING:
                raise InvalidTransition(phase, event)
            nxt = SessionSnapshot(
                phase=Phase.AUTHENTICATED if event.access else Phase.INVALID,
                access_credential=event.access,
                refresh_credential=event.refresh or current.refresh_credential,
                identity=current.identity,
            )

        elif isinstance(event, RefreshAborted):
            if phase is not Phase.REFRESHING:
                raise InvalidTransition(phase, event)
            nxt = replace(current, phase=Phase.AUTHENTICATED)

        elif isinstance(event, RefreshFailed):
            if phase is not Phase.REFRESHING:
                raise InvalidTransition(phase, event)
            nxt = ANONYMOUS

        else:
            raise TypeError(f"Unknown session event: {event!r}")

        self._snapshot = _normalize(nxt)
        return self._snapshot


def _normalize(snapshot: SessionSnapshot) -> SessionSnapshot:
    """Collapse INVALID (or any credential-less session) to ANONYMOUS."""
    if snapshot.phase in (Phase.INVALID, Phase.ANONYMOUS) or not snapshot.access_credential:
        return ANONYMOUS
    return snapshot
