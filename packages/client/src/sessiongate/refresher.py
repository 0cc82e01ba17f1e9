"""Credential refresher — trade a refresh credential for a new access credential.

Learn: this is one network call and nothing else. No retries, no knowledge
of who is waiting, no session writes. The coordinator decides what a
failure means for the session; this module only classifies it:

    2xx + token          → NewAccess
    401                  → EXPIRED (REVOKED if the server says so)
    403 / 404 / other 4xx→ REVOKED
    408 / 429 / 5xx      → NETWORK_FAILURE
    transport error      → NETWORK_FAILURE
    timeout              → NETWORK_FAILURE
    200 without a token  → NETWORK_FAILURE (server bug, don't log the user out)

The call bypasses the RequestGateway on purpose: no bearer header and no
401 interception, otherwise a failed refresh would try to refresh itself.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from sessiongate.errors import RefreshError, RefreshErrorKind

logger = structlog.get_logger()

_REVOKED_HINTS = ("revoked", "blacklist", "invalid refresh")


@dataclass(frozen=True)
class NewAccess:
    access: str
    refresh: Optional[str] = None

    def __repr__(self) -> str:
        return f"NewAccess(access=set, refresh={'set' if self.refresh else None})"


# ─── Wire schemas ────────────────────────────────────────


class _EnvelopeTokens(BaseModel):
    token: str
    refreshToken: Optional[str] = None


class _Envelope(BaseModel):
    status: str = "success"
    data: _EnvelopeTokens


class _FlatTokens(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None


def parse_token_body(body) -> NewAccess:
    """Accept either the {status, data: {token}} envelope or flat OAuth-style tokens."""
    if isinstance(body, dict) and "data" in body:
        env = _Envelope.model_validate(body)
        return NewAccess(env.data.token, env.data.refreshToken)
    flat = _FlatTokens.model_validate(body)
    return NewAccess(flat.access_token, flat.refresh_token)


def error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("detail") or "")
    return ""


# ─── Refresher ───────────────────────────────────────────


class CredentialRefresher:
    def __init__(
        self,
        client: httpx.AsyncClient,
        path: str = "/auth/refresh-token",
        timeout: float = 10.0,
    ):
        if timeout <= 0:
            raise ValueError("refresh timeout must be positive")
        self.client = client
        self.path = path
        self.timeout = timeout

    async def refresh(self, refresh_credential: str) -> NewAccess:
        try:
            response = await asyncio.wait_for(
                self.client.post(self.path, json={"refreshToken": refresh_credential}),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("refresher.timeout", timeout=self.timeout)
            raise RefreshError(
                RefreshErrorKind.NETWORK_FAILURE, f"refresh timed out after {self.timeout}s"
            )
        except httpx.TransportError as e:
            logger.warning("refresher.transport_error", error=type(e).__name__)
            raise RefreshError(RefreshErrorKind.NETWORK_FAILURE, str(e) or type(e).__name__)

        status = response.status_code
        if 200 <= status < 300:
            try:
                return parse_token_body(response.json())
            except (ValueError, ValidationError) as e:
                logger.warning("refresher.malformed_response", error=str(e))
                raise RefreshError(
                    RefreshErrorKind.NETWORK_FAILURE, "malformed refresh response", status
                )

        message = error_message(response)
        kind = classify_status(status, message)
        logger.info("refresher.rejected", status=status, kind=kind.value)
        raise RefreshError(kind, message, status)


def classify_status(status: int, message: str = "") -> RefreshErrorKind:
    if status == 401:
        lowered = message.lower()
        if any(hint in lowered for hint in _REVOKED_HINTS):
            return RefreshErrorKind.REVOKED
        return RefreshErrorKind.EXPIRED
    if status in (408, 429) or status >= 500:
        return RefreshErrorKind.NETWORK_FAILURE
    return RefreshErrorKind.REVOKED
