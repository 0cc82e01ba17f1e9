"""Test fixtures — an in-memory fake API behind httpx.MockTransport.

Learn: the fake API keeps just enough server state to drive every session
path deterministically:

- a set of access tokens it currently accepts (expire() empties it)
- the refresh tokens it will honor, and a refresh_mode:
  "ok" | "expired" | "revoked" | "network" | "server_error" | "hang" | "malformed"
- refresh_gate: an asyncio.Event the refresh endpoint waits on, so a test
  can pile up N waiters before letting the refresh finish
- a log of every dispatched call with the bearer token it carried

Tests build a SessionClient over it with a MemorySessionStore, so nothing
touches disk or the network.
"""

import asyncio
import json
from typing import Optional

import httpx
import jwt
import pytest_asyncio

from sessiongate.client import SessionClient
from sessiongate.config import Settings
from sessiongate.persistence import MemorySessionStore
from sessiongate.state import Identity

API_URL = "http://test/api"

ADA = Identity(id="u-1", role="student", display_name="Ada Lovelace", email="ada@example.com")


def _bearer(request: httpx.Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    return auth[7:] if auth.startswith("Bearer ") else None


class FakeApi:
    def __init__(self):
        self.valid_access: set[str] = {"access-0"}
        self.refresh_tokens: set[str] = {"refresh-0"}
        self.refresh_mode = "ok"
        self.rotate_refresh = False
        self.refresh_gate: Optional[asyncio.Event] = None
        self.refresh_calls = 0
        self.refresh_bodies: list[bytes] = []
        self.refresh_headers: list[httpx.Headers] = []
        self.dispatched: list[tuple[str, str, Optional[str]]] = []
        self.request_ids: list[Optional[str]] = []
        self.logouts = 0
        self.users = {"ada@example.com": "correct-horse"}

    def expire(self) -> None:
        """Every access token issued so far stops working."""
        self.valid_access.clear()

    def calls_to(self, path: str) -> list[tuple[str, str, Optional[str]]]:
        return [c for c in self.dispatched if c[1] == path]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api")
        if path == "/auth/refresh-token":
            return await self._refresh(request)

        token = _bearer(request)
        self.dispatched.append((request.method, path, token))
        self.request_ids.append(request.headers.get("X-Request-ID"))

        if path == "/auth/login":
            return self._login(request)
        if path == "/auth/register":
            return self._register(request)
        if path == "/auth/logout":
            self.logouts += 1
            return httpx.Response(200, json={"status": "success", "message": "Logged out successfully"})
        if path == "/forbidden":
            return httpx.Response(403, json={"status": "error", "message": "Forbidden"})
        if path == "/boom":
            return httpx.Response(500, json={"status": "error", "message": "Internal error"})
        if path == "/locked":
            return httpx.Response(401, json={"status": "error", "message": "Not allowed"})
        if path == "/down":
            raise httpx.ConnectError("connection refused", request=request)

        if token not in self.valid_access:
            return httpx.Response(401, json={"status": "error", "message": "Token expired"})

        if path == "/auth/change-password":
            return self._change_password(request)
        if path == "/auth/me":
            return httpx.Response(200, json={
                "status": "success",
                "data": {"user": {
                    "id": "u-1", "email": "ada@example.com",
                    "firstName": "Ada", "lastName": "Lovelace", "role": "student",
                }},
            })
        return httpx.Response(200, json={"ok": True, "path": path, "token": token})

    def _login(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if self.users.get(body.get("email")) != body.get("password"):
            return httpx.Response(401, json={"status": "error", "message": "Invalid email or password"})
        token = f"access-login-{len(self.dispatched)}"
        self.valid_access.add(token)
        self.refresh_tokens.add("refresh-login")
        return httpx.Response(200, json={
            "status": "success",
            "data": {
                "user": {
                    "id": "u-1", "email": "ada@example.com",
                    "firstName": "Ada", "lastName": "Lovelace", "role": "student",
                },
                "token": token,
                "refreshToken": "refresh-login",
            },
        })

    def _change_password(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if self.users["ada@example.com"] != body.get("currentPassword"):
            return httpx.Response(401, json={"status": "error", "message": "Current password is incorrect"})
        self.users["ada@example.com"] = body["newPassword"]
        return httpx.Response(200, json={"status": "success", "message": "Password updated successfully"})

    def _register(self, request: httpx.Request) -> httpx.Response:
        """Answers in the flat token shape; the identity lives in the JWT claims."""
        body = json.loads(request.content)
        if body.get("email") in self.users:
            return httpx.Response(409, json={"detail": "Email already registered"})
        self.users[body["email"]] = body["password"]
        token = jwt.encode(
            {
                "sub": "u-2",
                "role": body.get("role"),
                "name": f"{body['firstName']} {body['lastName']}",
                "email": body["email"],
            },
            "server-secret",
            algorithm="HS256",
        )
        self.valid_access.add(token)
        self.refresh_tokens.add("refresh-register")
        return httpx.Response(201, json={
            "access_token": token,
            "refresh_token": "refresh-register",
            "token_type": "bearer",
        })

    async def _refresh(self, request: httpx.Request) -> httpx.Response:
        self.refresh_calls += 1
        self.refresh_bodies.append(request.content)
        self.refresh_headers.append(request.headers)
        if self.refresh_gate is not None:
            await self.refresh_gate.wait()

        mode = self.refresh_mode
        if mode == "hang":
            await asyncio.sleep(3600)
        if mode == "network":
            raise httpx.ConnectError("connection refused", request=request)
        if mode == "server_error":
            return httpx.Response(503, json={"status": "error", "message": "Unavailable"})
        if mode == "malformed":
            return httpx.Response(200, json={"status": "success", "data": {}})
        if mode == "revoked":
            return httpx.Response(401, json={"status": "error", "message": "Invalid refresh token"})

        presented = json.loads(request.content).get("refreshToken")
        if mode == "expired" or presented not in self.refresh_tokens:
            return httpx.Response(401, json={"status": "error", "message": "jwt expired"})

        token = f"access-{self.refresh_calls}"
        self.valid_access.add(token)
        data = {"token": token}
        if self.rotate_refresh:
            data["refreshToken"] = f"refresh-{self.refresh_calls}"
            self.refresh_tokens.add(data["refreshToken"])
        return httpx.Response(200, json={"status": "success", "data": data})


def make_settings(**overrides) -> Settings:
    values = {
        "api_url": API_URL,
        "persistence": "memory",
        "refresh_timeout_seconds": 2.0,
    }
    values.update(overrides)
    return Settings(**values)


def make_client(api: FakeApi, store: Optional[MemorySessionStore] = None, **overrides) -> SessionClient:
    return SessionClient(
        make_settings(**overrides),
        transport=httpx.MockTransport(api.handler),
        store=store if store is not None else MemorySessionStore(),
    )


async def wait_for_waiters(client: SessionClient, count: int) -> None:
    """Spin the loop until `count` callers are parked on the refresh."""
    for _ in range(1000):
        if client.coordinator.waiter_count >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError(
        f"expected {count} waiters, saw {client.coordinator.waiter_count}"
    )


@pytest_asyncio.fixture()
async def api():
    return FakeApi()


@pytest_asyncio.fixture()
async def store():
    return MemorySessionStore()


@pytest_asyncio.fixture()
async def client(api, store):
    """Client logged in as Ada with access-0 / refresh-0."""
    c = make_client(api, store)
    await c.start()
    await c.coordinator.login("access-0", "refresh-0", ADA)
    try:
        yield c
    finally:
        await c.aclose()
