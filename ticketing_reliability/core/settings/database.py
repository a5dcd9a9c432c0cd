"""Database connection settings."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """SQLAlchemy async database settings.

    Environment variables use DB_ prefix.
    Example: DB_URL=postgresql+psycopg://user:pass@db:5432/ticketing

    Any async SQLAlchemy URL works; PostgreSQL is the production target and
    SQLite (aiosqlite) is used for local runs and tests.
    """

    url: str = Field(
        default="sqlite+aiosqlite:///./ticketing.db",
        min_length=1,
        description="Async SQLAlchemy database URL.",
    )
    echo: bool = Field(
        default=False,
        description="Echo SQL statements to the log.",
    )
    pool_pre_ping: bool = Field(
        default=True,
        description="Test connections before handing them out of the pool.",
    )

    # ─────────────────────────────────────────────────────
    # Startup retry
    # ─────────────────────────────────────────────────────
    startup_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Number of retry attempts during service startup.",
    )
    startup_retry_delay: float = Field(
        default=2.0,
        ge=0.1,
        le=60.0,
        description="Delay (seconds) between startup retry attempts.",
    )
    startup_retry_timeout: float = Field(
        default=60.0,
        ge=5.0,
        le=300.0,
        description="Maximum total time (seconds) for startup retry attempts.",
    )

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )

    @property
    def is_sqlite(self) -> bool:
        """Whether the configured backend is SQLite."""
        return self.url.startswith("sqlite")

    def get_safe_url(self) -> str:
        """Return the URL with any password masked, for logging."""
        if "@" not in self.url or "://" not in self.url:
            return self.url
        scheme, rest = self.url.split("://", 1)
        credentials, host = rest.rsplit("@", 1)
        user = credentials.split(":", 1)[0]
        return f"{scheme}://{user}:***@{host}"
