"""Session persistence — survive process restarts.

Learn: only a whitelisted subset of the session is durable. The default
whitelist (identity, access_credential, authenticated) keeps the refresh
credential in memory only, so a restarted process can make calls until the
access token expires, and then has to log in again (the first 401 finds no
refresh credential and resolves to Unauthenticated).

Record layout (version 1):

    {"version": 1, "identity": {...}, "access_credential": "...",
     "authenticated": true, "refresh_credential": "..."?}

No record, an unknown version, or a corrupt file all mean "start Anonymous".

Backends:
- MemorySessionStore — tests, or persistence disabled for a single process
- FileSessionStore   — JSON file, replaced atomically, mode 0600
- RedisSessionStore  — redis.asyncio, one JSON value under a key
"""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Iterable, Optional, Protocol

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, ValidationError

from sessiongate.config import Settings
from sessiongate.state import ANONYMOUS, Identity, Phase, SessionSnapshot

logger = structlog.get_logger()

RECORD_VERSION = 1


class PersistedSession(BaseModel):
    version: int = RECORD_VERSION
    identity: Optional[Identity] = None
    access_credential: Optional[str] = None
    authenticated: bool = False
    refresh_credential: Optional[str] = None


class SessionStore(Protocol):
    async def load(self) -> Optional[str]: ...

    async def save(self, payload: str) -> None: ...

    async def clear(self) -> None: ...


# ─── Stores ──────────────────────────────────────────────


class MemorySessionStore:
    def __init__(self, payload: Optional[str] = None):
        self.payload = payload
        self.writes = 0

    async def load(self) -> Optional[str]:
        return self.payload

    async def save(self, payload: str) -> None:
        self.payload = payload
        self.writes += 1

    async def clear(self) -> None:
        self.payload = None
        self.writes += 1


class FileSessionStore:
    """JSON file store. Writes go to a temp file in the same dir, then os.replace().

    The blocking file calls run in a worker thread via asyncio.to_thread.
    """

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()

    async def load(self) -> Optional[str]:
        return await asyncio.to_thread(self._read)

    async def save(self, payload: str) -> None:
        await asyncio.to_thread(self._write, payload)

    async def clear(self) -> None:
        await asyncio.to_thread(self.path.unlink, missing_ok=True)

    def _read(self) -> Optional[str]:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _write(self, payload: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".session-", suffix=".tmp")
        try:
            os.chmod(tmp, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


class RedisSessionStore:
    def __init__(self, redis: aioredis.Redis, key: str):
        self.redis = redis
        self.key = key

    @classmethod
    def from_url(cls, url: str, key: str) -> "RedisSessionStore":
        return cls(aioredis.from_url(url, encoding="utf-8", decode_responses=True), key)

    async def load(self) -> Optional[str]:
        return await self.redis.get(self.key)

    async def save(self, payload: str) -> None:
        await self.redis.set(self.key, payload)

    async def clear(self) -> None:
        await self.redis.delete(self.key)

    async def close(self) -> None:
        await self.redis.close()


def build_store(cfg: Settings) -> Optional[SessionStore]:
    """Pick a store from configuration. Returns None when persistence is off."""
    if cfg.persistence == "none":
        return None
    if cfg.persistence == "memory":
        return MemorySessionStore()
    if cfg.persistence == "redis":
        return RedisSessionStore.from_url(cfg.redis_url, cfg.redis_key)
    return FileSessionStore(cfg.state_path)


# ─── Adapter ─────────────────────────────────────────────


class SessionPersistence:
    """Projects session snapshots onto the durable record and back.

    Saves are serialized and always write the most recent snapshot handed
    in, so a slow store can never leave an older session on disk.
    """

    def __init__(
        self,
        store: SessionStore,
        fields: Iterable[str] = ("identity", "access_credential", "authenticated"),
    ):
        self.store = store
        self.fields = frozenset(fields)
        self._lock = asyncio.Lock()
        self._latest: Optional[SessionSnapshot] = None

    def to_record(self, snapshot: SessionSnapshot) -> PersistedSession:
        record = PersistedSession(authenticated=snapshot.authenticated)
        if "identity" in self.fields:
            record.identity = snapshot.identity
        if "access_credential" in self.fields:
            record.access_credential = snapshot.access_credential
        if "refresh_credential" in self.fields:
            record.refresh_credential = snapshot.refresh_credential
        if "authenticated" not in self.fields:
            record.authenticated = snapshot.access_credential is not None
        return record

    def from_record(self, record: PersistedSession) -> Optional[SessionSnapshot]:
        if not record.authenticated or not record.access_credential:
            return None
        return SessionSnapshot(
            phase=Phase.AUTHENTICATED,
            access_credential=record.access_credential,
            refresh_credential=record.refresh_credential,
            identity=record.identity,
        )

    async def save(self, snapshot: SessionSnapshot) -> None:
        self._latest = snapshot
        async with self._lock:
            latest = self._latest
            if latest is None:
                return
            self._latest = None
            if not latest.authenticated:
                await self.store.clear()
                logger.debug("session.persistence_cleared")
                return
            # A snapshot caught mid-refresh is stored as plain Authenticated
            await self.store.save(self.to_record(latest).model_dump_json())
            logger.debug("session.persisted", fields=sorted(self.fields))

    async def load(self) -> Optional[SessionSnapshot]:
        try:
            raw = await self.store.load()
        except UnicodeDecodeError:
            logger.warning("session.persisted_record_corrupt", reason="not utf-8")
            return None
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("session.persisted_record_corrupt", reason="not json")
            return None
        if not isinstance(data, dict) or data.get("version") != RECORD_VERSION:
            logger.warning(
                "session.persisted_record_unsupported",
                version=data.get("version") if isinstance(data, dict) else None,
            )
            return None
        try:
            record = PersistedSession.model_validate(data)
        except ValidationError as e:
            logger.warning("session.persisted_record_invalid", error=str(e))
            return None
        return self.from_record(record)

    async def clear(self) -> None:
        await self.save(ANONYMOUS)
