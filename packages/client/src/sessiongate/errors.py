"""Session error taxonomy.

Learn: a 401 never reaches the caller as-is. The gateway resolves it into
one of these, so callers only ever have to handle:

- Unauthenticated          → there is no session to refresh
- SessionExpired           → the refresh was definitively refused
- RefreshTransientFailure  → refresh could not complete, session kept, retry later
- PassthroughError         → any other non-2xx response (client helpers only)

RefreshError and InvalidTransition stay inside the package.
"""

from enum import Enum
from typing import Optional

import httpx


class SessionError(Exception):
    """Base class for everything raised across the gateway boundary."""


class Unauthenticated(SessionError):
    """No session, or no refresh credential to recover one."""

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class SessionExpired(SessionError):
    """The refresh credential was rejected; the session is gone."""

    def __init__(self, message: str = "Session expired"):
        super().__init__(message)


class RefreshTransientFailure(SessionError):
    """Refresh failed for a retryable reason. The session is preserved."""

    def __init__(self, message: str = "Credential refresh failed, try again"):
        super().__init__(message)


class PassthroughError(SessionError):
    """A non-2xx response surfaced by the client helpers.

    The gateway itself returns such responses untouched; only the
    convenience helpers (login, me, ...) turn them into exceptions.
    """

    def __init__(self, response: httpx.Response, message: Optional[str] = None):
        self.response = response
        self.status_code = response.status_code
        super().__init__(message or f"HTTP {response.status_code}")


class InvalidTransition(Exception):
    """An event was applied in a phase that does not accept it."""

    def __init__(self, phase, event):
        self.phase = phase
        self.event = event
        super().__init__(f"{type(event).__name__} is not valid in phase {phase.value}")


class RefreshErrorKind(str, Enum):
    EXPIRED = "expired"
    REVOKED = "revoked"
    NETWORK_FAILURE = "network_failure"


class RefreshError(Exception):
    """Raised by the credential refresher."""

    def __init__(
        self,
        kind: RefreshErrorKind,
        detail: str = "",
        status_code: Optional[int] = None,
    ):
        self.kind = kind
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)

    @property
    def recoverable(self) -> bool:
        return self.kind is RefreshErrorKind.NETWORK_FAILURE
