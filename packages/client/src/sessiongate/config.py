"""Client configuration via environment variables.

Uses pydantic-settings to load config from env vars with SESSIONGATE_ prefix.
Everything has a working default for local development against
http://localhost:4000/api.

Learn: the refresh timeout is not optional. A refresh call that hangs would
park every waiting request forever, so it must be a positive number.
"""

from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

PERSISTABLE_FIELDS = frozenset(
    {"identity", "access_credential", "authenticated", "refresh_credential"}
)


class Settings(BaseSettings):
    """All client configuration. Set via SESSIONGATE_* env vars."""

    # API
    api_url: str = "http://localhost:4000/api"
    request_timeout_seconds: float = 30.0

    # Auth endpoints (relative to api_url)
    login_path: str = "/auth/login"
    register_path: str = "/auth/register"
    logout_path: str = "/auth/logout"
    me_path: str = "/auth/me"
    change_password_path: str = "/auth/change-password"
    refresh_path: str = "/auth/refresh-token"
    refresh_timeout_seconds: float = 10.0

    # Persistence
    persistence: str = "file"  # none | memory | file | redis
    state_path: Path = Path.home() / ".sessiongate" / "session.json"
    redis_url: str = "redis://localhost:6379/0"
    redis_key: str = "sessiongate:session"
    persist_fields: list[str] = ["identity", "access_credential", "authenticated"]
    allow_durable_refresh_credential: bool = False

    # Logging
    environment: str = "development"
    log_level: str = "INFO"
    log_json: bool = False

    model_config = {"env_prefix": "SESSIONGATE_"}

    @field_validator("refresh_timeout_seconds")
    @classmethod
    def refresh_timeout_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("refresh_timeout_seconds must be greater than zero")
        return v

    @field_validator("persistence")
    @classmethod
    def known_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("none", "memory", "file", "redis"):
            raise ValueError(f"Unknown persistence backend: {v}")
        return v

    @field_validator("persist_fields")
    @classmethod
    def known_fields(cls, v: list[str]) -> list[str]:
        unknown = set(v) - PERSISTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot persist unknown fields: {sorted(unknown)}")
        return v

    @model_validator(mode="after")
    def validate_durable_refresh_credential(self):
        """Refuse to write refresh tokens to disk outside development unless asked."""
        if (
            "refresh_credential" in self.persist_fields
            and self.persistence == "file"
            and self.environment != "development"
            and not self.allow_durable_refresh_credential
        ):
            raise ValueError(
                "Persisting the refresh credential to a plain file is disabled "
                "outside development. Set SESSIONGATE_ALLOW_DURABLE_REFRESH_CREDENTIAL=true "
                "to opt in."
            )
        return self


# Singleton — import this everywhere
settings = Settings()
