#!/usr/bin/env python3
"""
sessiongate Quickstart — login, concurrent calls, logout in one script.

Logs in → fires a burst of requests → shows that one refresh served the
whole burst when the access token had expired → logs out.
Run with: python examples/quickstart.py ada@example.com s3cret

Requires: pip install -e .
API must be running: SESSIONGATE_API_URL (default http://localhost:4000/api)
"""

import asyncio
import sys

import httpx

from sessiongate.client import SessionClient
from sessiongate.config import Settings
from sessiongate.errors import PassthroughError, SessionError
from sessiongate.log import configure_logging

PATHS = ["/courses", "/lectures", "/assignments", "/messages", "/auth/me"]


async def main(email: str, password: str):
    configure_logging("INFO")
    settings = Settings(persistence="memory")

    async with SessionClient(settings) as client:
        client.on_logout(lambda: print("   (logout event received)"))

        # ── Login ─────────────────────────────────────────────────────
        print(f"1. Logging in as {email}...")
        try:
            snap = await client.login(email, password)
        except PassthroughError as e:
            print(f"   Login failed ({e.status_code}): {e}")
            sys.exit(1)
        except httpx.ConnectError:
            print(f"   API not reachable at {settings.api_url}")
            sys.exit(1)
        who = snap.identity.display_name if snap.identity else email
        print(f"   Logged in: {who}")

        # ── Concurrent burst ──────────────────────────────────────────
        print(f"\n2. Sending {len(PATHS)} requests at once...")
        results = await asyncio.gather(
            *[client.get(path) for path in PATHS], return_exceptions=True
        )
        for path, result in zip(PATHS, results):
            if isinstance(result, SessionError):
                print(f"   {path:<14} → {type(result).__name__}: {result}")
            elif isinstance(result, Exception):
                print(f"   {path:<14} → {type(result).__name__}")
            else:
                print(f"   {path:<14} → {result.status_code}")

        print(f"\n   Refreshes: {client.coordinator.refresh_count}")
        print(f"   Dispatches: {client.gateway.dispatch_count}")
        print(f"   Phase: {client.session.phase.value}")

        # ── Logout ────────────────────────────────────────────────────
        print("\n3. Logging out...")
        await client.logout()
        print(f"   Phase: {client.session.phase.value}")


if __name__ == "__main__":
    if len(sys.argv) != 3:
        print("usage: quickstart.py EMAIL PASSWORD")
        sys.exit(2)
    asyncio.run(main(sys.argv[1], sys.argv[2]))
