from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from sessionvault.crypto import DEFAULT_ALGORITHM, get_suite
from sessionvault.statements import get_dialect

DEFAULT_TABLE = "sessions"
DEFAULT_RETRIES = 3
# Sweep cadence in seconds.
DEFAULT_CLEANUP_INTERVAL = 15 * 60


class SessionStoreSettings(BaseModel):
    table: str = DEFAULT_TABLE
    retries: int = Field(default=DEFAULT_RETRIES, ge=0)
    cleanup: bool = True
    cleanup_interval: float = Field(default=DEFAULT_CLEANUP_INTERVAL, gt=0)
    secret: Optional[str] = None
    algorithm: str = DEFAULT_ALGORITHM
    dialect: Optional[str] = None


class DatabaseSettings(BaseModel):
    # A full SQLAlchemy async URL wins over ``path`` when set.
    url: Optional[str] = None
    path: str = "sessions.sqlite3"
    pool_size: int = Field(default=10, gt=0)
    pool_timeout: float = Field(default=10.0, gt=0)
    timeout: float = 5.0
    busy_timeout: int = 5000


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SESSIONVAULT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    SESSION_STORE: SessionStoreSettings = Field(default_factory=SessionStoreSettings)
    DATABASE: DatabaseSettings = Field(default_factory=DatabaseSettings)


def load_settings(**overrides: Any) -> Settings:
    """Read settings from the environment and ``.env``; never cached."""

    return Settings(**overrides)


@dataclass(frozen=True, slots=True)
class StoreOptions:
    """Per-store configuration, passed explicitly at construction."""

    table: str = DEFAULT_TABLE
    retries: int = DEFAULT_RETRIES
    cleanup: bool = True
    cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL
    secret: Optional[str] = None
    algorithm: str = DEFAULT_ALGORITHM
    dialect: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.table:
            raise ValueError("table must not be empty")
        if self.retries < 0:
            raise ValueError("retries must be >= 0")
        if self.cleanup_interval <= 0:
            raise ValueError("cleanup_interval must be positive")
        if self.secret == "":
            object.__setattr__(self, "secret", None)
        get_suite(self.algorithm)
        if self.dialect is not None:
            get_dialect(self.dialect)

    @classmethod
    def from_settings(cls, settings: Settings) -> "StoreOptions":
        section = settings.SESSION_STORE
        return cls(
            table=section.table,
            retries=section.retries,
            cleanup=section.cleanup,
            cleanup_interval=section.cleanup_interval,
            secret=section.secret,
            algorithm=section.algorithm,
            dialect=section.dialect,
        )


__all__ = [
    "DatabaseSettings",
    "SessionStoreSettings",
    "Settings",
    "StoreOptions",
    "load_settings",
]
