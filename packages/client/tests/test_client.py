"""SessionClient tests — the auth-service calls and the request helpers."""

import httpx
import jwt
import pytest

from conftest import make_client, make_settings
from sessiongate.client import SessionClient, parse_auth_response
from sessiongate.errors import PassthroughError
from sessiongate.persistence import MemorySessionStore
from sessiongate.state import Phase


# ═══════════════════════════════════════════════════════════
# Login / register
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_login_installs_session(api):
    async with make_client(api) as client:
        snap = await client.login("ada@example.com", "correct-horse")

        assert snap.phase is Phase.AUTHENTICATED
        assert snap.access_credential.startswith("access-login-")
        assert snap.refresh_credential == "refresh-login"
        assert client.identity.display_name == "Ada Lovelace"
        assert client.identity.role == "student"
        # Login is sent without a bearer token
        assert api.calls_to("/auth/login")[0][2] is None


@pytest.mark.asyncio
async def test_login_rejected(api):
    async with make_client(api) as client:
        with pytest.raises(PassthroughError) as exc:
            await client.login("ada@example.com", "wrong")
        assert exc.value.status_code == 401
        assert client.session.phase is Phase.ANONYMOUS


@pytest.mark.asyncio
async def test_register_reads_identity_from_token_claims(api):
    async with make_client(api) as client:
        snap = await client.register(
            "grace@example.com", "cobol-4-ever", "Grace", "Hopper", role="instructor",
        )

        assert snap.phase is Phase.AUTHENTICATED
        assert snap.refresh_credential == "refresh-register"
        assert snap.identity.id == "u-2"
        assert snap.identity.display_name == "Grace Hopper"
        assert snap.identity.role == "instructor"

        r = await client.get("/courses")
        assert r.status_code == 200


@pytest.mark.asyncio
async def test_register_duplicate_email(api):
    async with make_client(api) as client:
        with pytest.raises(PassthroughError) as exc:
            await client.register("ada@example.com", "whatever", "Ada", "Again")
        assert exc.value.status_code == 409
        assert "Email already registered" in str(exc.value)


@pytest.mark.asyncio
async def test_malformed_login_response():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, json={"status": "success", "data": {}})
    )
    async with SessionClient(make_settings(), transport=transport, store=MemorySessionStore()) as client:
        with pytest.raises(PassthroughError, match="Malformed"):
            await client.login("ada@example.com", "correct-horse")
        assert client.session.phase is Phase.ANONYMOUS


def test_parse_auth_response_envelope_without_user_uses_claims():
    token = jwt.encode({"sub": "u-9", "role": "admin"}, "k", algorithm="HS256")
    access, refresh, identity = parse_auth_response(
        {"status": "success", "data": {"token": token}}
    )
    assert access == token
    assert refresh is None
    assert identity.id == "u-9"


# ═══════════════════════════════════════════════════════════
# me / logout
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_me(client):
    ident = await client.me()
    assert ident.id == "u-1"
    assert ident.display_name == "Ada Lovelace"


@pytest.mark.asyncio
async def test_me_after_token_expiry_refreshes(client, api):
    api.expire()
    ident = await client.me()
    assert ident.email == "ada@example.com"
    assert api.refresh_calls == 1


@pytest.mark.asyncio
async def test_logout_tells_server_then_drops_session(client, api):
    logouts = []
    client.on_logout(lambda: logouts.append(1))

    await client.logout()

    assert api.logouts == 1
    assert api.calls_to("/auth/logout")[0][2] == "access-0"
    assert client.session.phase is Phase.ANONYMOUS
    assert logouts == [1]


@pytest.mark.asyncio
@pytest.mark.parametrize("logout_path", ["/down", "/boom"])
async def test_logout_is_local_even_if_server_fails(api, logout_path):
    async with make_client(api, logout_path=logout_path) as client:
        await client.coordinator.login("access-0", "refresh-0")
        await client.logout()
        assert client.session.phase is Phase.ANONYMOUS
        assert client.notifier.notifications == 1


@pytest.mark.asyncio
async def test_logout_when_anonymous_skips_server(api):
    async with make_client(api) as client:
        await client.logout()
        assert api.logouts == 0
        assert client.notifier.notifications == 0


# ═══════════════════════════════════════════════════════════
# Request helpers
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_every_verb_goes_through_the_gateway(client, api):
    await client.put("/courses/1", json={"title": "x"})
    await client.patch("/courses/1", json={"title": "y"})
    await client.delete("/courses/1")
    await client.request("GET", "/courses/1")

    assert [(m, t) for m, _, t in api.calls_to("/courses/1")] == [
        ("PUT", "access-0"),
        ("PATCH", "access-0"),
        ("DELETE", "access-0"),
        ("GET", "access-0"),
    ]
    assert client.gateway.dispatch_count == 4


@pytest.mark.asyncio
async def test_start_is_idempotent(client):
    before = client.session
    assert await client.start() == before


@pytest.mark.asyncio
async def test_persistence_disabled(api):
    client = SessionClient(make_settings(persistence="none"), transport=httpx.MockTransport(api.handler))
    async with client:
        await client.login("ada@example.com", "correct-horse")
        assert client.persistence is None


# ═══════════════════════════════════════════════════════════
# change_password
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_change_password(client, api):
    message = await client.change_password("correct-horse", "battery-staple")

    assert message == "Password updated successfully"
    assert api.users["ada@example.com"] == "battery-staple"
    assert api.calls_to("/auth/change-password") == [("PATCH", "/auth/change-password", "access-0")]


@pytest.mark.asyncio
async def test_change_password_after_token_expiry_refreshes(client, api):
    api.expire()
    await client.change_password("correct-horse", "battery-staple")
    assert api.refresh_calls == 1
    assert api.calls_to("/auth/change-password")[-1][2] == "access-1"


@pytest.mark.asyncio
async def test_change_password_wrong_current_password(client, api):
    with pytest.raises(PassthroughError) as exc:
        await client.change_password("wrong", "battery-staple")

    assert exc.value.status_code == 401
    assert "Current password is incorrect" in str(exc.value)
    assert api.users["ada@example.com"] == "correct-horse"
    # The session survives; only the request failed
    assert client.session.phase is Phase.AUTHENTICATED
