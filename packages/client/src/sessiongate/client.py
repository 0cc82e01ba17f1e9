"""SessionClient — the one object an application holds.

Learn: wires the pieces together and adds the auth-service calls
(login, register, logout, me, change_password):

    client = SessionClient()
    async with client:
        await client.login("ada@example.com", "s3cret")
        r = await client.get("/courses")          # 401s handled for you
        client.on_logout(lambda: print("bye"))

Startup rehydrates the session from the configured store. Every committed
transition (login, refresh, logout, failed refresh) is written back.

Login/register accept either response shape the API has used:

    {"status": "success", "data": {"user": {...}, "token": "...", "refreshToken": "..."}}
    {"access_token": "...", "refresh_token": "...", "token_type": "bearer"}

For the flat shape the identity is read from the access token's claims.
"""

from typing import Optional

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from sessiongate.claims import identity_from_claims, read_claims
from sessiongate.config import Settings
from sessiongate.config import settings as default_settings
from sessiongate.coordinator import RefreshCoordinator
from sessiongate.errors import PassthroughError
from sessiongate.gateway import RequestGateway
from sessiongate.observer import LogoutCallback, LogoutNotifier
from sessiongate.persistence import SessionPersistence, SessionStore, build_store
from sessiongate.refresher import CredentialRefresher, error_message
from sessiongate.state import Identity, SessionSnapshot, SessionState

logger = structlog.get_logger()


# ─── Wire schemas ────────────────────────────────────────


class UserPayload(BaseModel):
    id: str
    email: Optional[str] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = None

    def to_identity(self) -> Identity:
        display = self.name or " ".join(p for p in (self.firstName, self.lastName) if p)
        return Identity(
            id=self.id,
            role=self.role,
            display_name=display or None,
            email=self.email,
        )


class _AuthData(BaseModel):
    user: Optional[UserPayload] = None
    token: str
    refreshToken: Optional[str] = None


class _AuthEnvelope(BaseModel):
    status: str = "success"
    data: _AuthData


class _FlatAuth(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None


def parse_auth_response(body) -> tuple[str, Optional[str], Optional[Identity]]:
    """Return (access, refresh, identity) from a login/register response."""
    if isinstance(body, dict) and "data" in body:
        env = _AuthEnvelope.model_validate(body)
        identity = env.data.user.to_identity() if env.data.user else None
        if identity is None:
            identity = identity_from_claims(read_claims(env.data.token))
        return env.data.token, env.data.refreshToken, identity
    flat = _FlatAuth.model_validate(body)
    return flat.access_token, flat.refresh_token, identity_from_claims(read_claims(flat.access_token))


def _unwrap(body):
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    raise PassthroughError(response, error_message(response) or None)


# ─── Client ──────────────────────────────────────────────


class SessionClient:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        store: Optional[SessionStore] = None,
        notifier: Optional[LogoutNotifier] = None,
    ):
        self.settings = settings or default_settings
        self.http = httpx.AsyncClient(
            base_url=self.settings.api_url,
            timeout=self.settings.request_timeout_seconds,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

        if store is None:
            store = build_store(self.settings)
        self.persistence = (
            SessionPersistence(store, self.settings.persist_fields) if store is not None else None
        )

        self.state = SessionState()
        self.notifier = notifier or LogoutNotifier()
        self.refresher = CredentialRefresher(
            self.http,
            path=self.settings.refresh_path,
            timeout=self.settings.refresh_timeout_seconds,
        )
        self.coordinator = RefreshCoordinator(
            self.state,
            self.refresher,
            self.notifier,
            on_commit=self.persistence.save if self.persistence else None,
        )
        self.gateway = RequestGateway(self.http, self.state, self.coordinator)
        self._started = False

    async def __aenter__(self) -> "SessionClient":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def start(self) -> SessionSnapshot:
        """Rehydrate the session from the store. Safe to call more than once."""
        if self._started:
            return self.session
        self._started = True
        if self.persistence is None:
            return self.session
        snapshot = await self.persistence.load()
        if snapshot is None:
            return self.session
        return await self.coordinator.restore(snapshot)

    async def aclose(self) -> None:
        await self.coordinator.aclose()
        await self.http.aclose()
        store = self.persistence.store if self.persistence else None
        if hasattr(store, "close"):
            await store.close()

    # ─── Session ──────────────────────────────────────────

    @property
    def session(self) -> SessionSnapshot:
        return self.state.read()

    @property
    def identity(self) -> Optional[Identity]:
        return self.state.read().identity

    def on_logout(self, callback: LogoutCallback):
        """Subscribe to the logout event. Returns an unsubscribe function."""
        return self.notifier.subscribe(callback)

    # ─── Auth service ─────────────────────────────────────

    async def login(self, email: str, password: str) -> SessionSnapshot:
        r = await self.gateway.post(
            self.settings.login_path,
            json={"email": email, "password": password},
            authenticate=False,
        )
        return await self._accept_credentials(r)

    async def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        role: str = "student",
    ) -> SessionSnapshot:
        r = await self.gateway.post(
            self.settings.register_path,
            json={
                "email": email,
                "password": password,
                "firstName": first_name,
                "lastName": last_name,
                "role": role,
            },
            authenticate=False,
        )
        return await self._accept_credentials(r)

    async def logout(self) -> None:
        """Tell the server (best effort), then drop the local session.

        The local logout always happens, even if the server call fails.
        """
        if self.session.access_credential:
            try:
                r = await self.gateway.post(self.settings.logout_path, authenticate=False,
                                            headers=self._bearer())
                if not r.is_success:
                    logger.warning("client.server_logout_rejected", status=r.status_code)
            except httpx.HTTPError as e:
                logger.warning("client.server_logout_failed", error=type(e).__name__)
        await self.coordinator.logout()

    async def me(self) -> Identity:
        r = await self.gateway.get(self.settings.me_path)
        _raise_for_status(r)
        body = _unwrap(r.json())
        if isinstance(body, dict) and "user" in body:
            body = body["user"]
        return UserPayload.model_validate(body).to_identity()

    async def change_password(self, current_password: str, new_password: str) -> str:
        """PATCH the new password. Returns the server's confirmation message.

        The API answers a wrong current password with 401, which the gateway
        treats like any other 401: one refresh, one retry, and then the
        second 401 surfaces here as PassthroughError.
        """
        r = await self.gateway.patch(
            self.settings.change_password_path,
            json={"currentPassword": current_password, "newPassword": new_password},
        )
        _raise_for_status(r)
        body = r.json()
        return body.get("message", "") if isinstance(body, dict) else ""

    async def _accept_credentials(self, response: httpx.Response) -> SessionSnapshot:
        _raise_for_status(response)
        try:
            access, refresh, identity = parse_auth_response(response.json())
        except (ValueError, ValidationError):
            raise PassthroughError(response, "Malformed authentication response")
        return await self.coordinator.login(access, refresh, identity)

    def _bearer(self) -> dict:
        token = self.session.access_credential
        return {"Authorization": f"Bearer {token}"} if token else {}

    # ─── Requests ─────────────────────────────────────────

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        return await self.gateway.request(method, url, **kwargs)

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.gateway.get(url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.gateway.post(url, **kwargs)

    async def put(self, url: str, **kwargs) -> httpx.Response:
        return await self.gateway.put(url, **kwargs)

    async def patch(self, url: str, **kwargs) -> httpx.Response:
        return await self.gateway.patch(url, **kwargs)

    async def delete(self, url: str, **kwargs) -> httpx.Response:
        return await self.gateway.delete(url, **kwargs)
