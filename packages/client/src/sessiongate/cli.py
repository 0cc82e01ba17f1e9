"""sessiongate CLI — log in once, then make authenticated API calls.

Usage:
    sessiongate login ada@example.com --password s3cret
    sessiongate status                       # Phase, user, token expiry
    sessiongate whoami                       # GET /auth/me
    sessiongate request GET /courses         # Any call, 401s handled
    sessiongate request POST /messages --json '{"body": "hi"}'
    sessiongate logout

The session lives in the configured store (SESSIONGATE_PERSISTENCE,
default: a JSON file under ~/.sessiongate). By default the refresh
credential is not written to disk, so each CLI invocation can use the
access token until it expires and then asks you to log in again.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import sys
from typing import Optional

import click

from sessiongate import __version__
from sessiongate.claims import expires_at
from sessiongate.client import SessionClient
from sessiongate.config import settings
from sessiongate.errors import PassthroughError, SessionError
from sessiongate.log import configure_logging

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _client() -> SessionClient:
    """Build a session client from the environment."""
    return SessionClient(settings)


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Handles nested event loops (e.g. CliRunner inside an async test) by
    offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _fail(message: str) -> None:
    click.secho(f"Error: {message}", fg="red", err=True)
    sys.exit(1)


_PHASE_COLORS = {
    "anonymous": "white",
    "authenticated": "green",
    "refreshing": "yellow",
}


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="sessiongate")
@click.option("--verbose", "-v", is_flag=True, help="Log session events to stderr")
def main(verbose: bool):
    """sessiongate — authenticated API calls with transparent token refresh."""
    configure_logging("DEBUG" if verbose else settings.log_level, json=settings.log_json)


# ---------------------------------------------------------------------------
# sessiongate login / logout
# ---------------------------------------------------------------------------


@main.command()
@click.argument("email")
@click.password_option("--password", "-p", confirmation_prompt=False)
def login(email: str, password: str):
    """Log in and store the session."""
    _run(_login_impl(email, password))


async def _login_impl(email: str, password: str):
    async with _client() as c:
        try:
            snapshot = await c.login(email, password)
        except PassthroughError as e:
            _fail(f"Login failed ({e.status_code}): {e}")
        except SessionError as e:
            _fail(str(e))

        ident = snapshot.identity
        who = (ident.display_name or ident.id) if ident else email
        click.secho(f"Logged in as {who}", fg="green")


@main.command()
def logout():
    """Log out and forget the stored session."""
    _run(_logout_impl())


async def _logout_impl():
    async with _client() as c:
        if not c.session.authenticated:
            click.echo("Not logged in.")
            return
        await c.logout()
        click.secho("Logged out successfully", fg="green")


# ---------------------------------------------------------------------------
# sessiongate status / whoami
# ---------------------------------------------------------------------------


@main.command()
def status():
    """Show the stored session: phase, user, and token expiry."""
    _run(_status_impl())


async def _status_impl():
    async with _client() as c:
        snap = c.session
        phase = snap.phase.value
        click.echo(f"Phase:    {click.style(phase, fg=_PHASE_COLORS.get(phase, 'white'))}")
        if not snap.authenticated:
            return

        ident = snap.identity
        if ident:
            click.echo(f"User:     {ident.display_name or '—'} ({ident.id})")
            click.echo(f"Role:     {ident.role or '—'}")
        exp = expires_at(snap.access_credential)
        click.echo(f"Expires:  {exp.isoformat() if exp else 'unknown'}")
        refresh = "yes" if snap.refresh_credential else "no (log in again when the token expires)"
        click.echo(f"Refresh:  {refresh}")


@main.command()
def whoami():
    """Ask the API who the current session belongs to."""
    _run(_whoami_impl())


async def _whoami_impl():
    async with _client() as c:
        try:
            ident = await c.me()
        except PassthroughError as e:
            _fail(f"Request failed ({e.status_code}): {e}")
        except SessionError as e:
            _fail(str(e))
        click.echo(_pretty_json(ident.model_dump()))


# ---------------------------------------------------------------------------
# sessiongate request
# ---------------------------------------------------------------------------


@main.command()
@click.argument("method")
@click.argument("path")
@click.option("--json", "json_body", help="JSON request body")
def request(method: str, path: str, json_body: Optional[str]):
    """Send an authenticated request and print the response."""
    body = None
    if json_body:
        try:
            body = json.loads(json_body)
        except json.JSONDecodeError as e:
            _fail(f"--json is not valid JSON: {e}")
    _run(_request_impl(method.upper(), path, body))


async def _request_impl(method: str, path: str, body):
    async with _client() as c:
        kwargs = {"json": body} if body is not None else {}
        try:
            r = await c.request(method, path, **kwargs)
        except SessionError as e:
            _fail(str(e))

        color = "green" if r.is_success else "red"
        click.secho(f"{r.status_code} {r.reason_phrase}", fg=color, bold=True)
        try:
            click.echo(_pretty_json(r.json()))
        except ValueError:
            if r.text:
                click.echo(r.text)
        if not r.is_success:
            sys.exit(1)


if __name__ == "__main__":
    main()
