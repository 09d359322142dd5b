# ---------------------------------------------------------------------------
# config.py
#
# Application configuration.
#
# All environment-driven settings used by the API live here. Values come from
# the process environment (a local `.env` file is loaded first when present)
# with defaults suitable for local development. Types are normalized
# (boolean, integer and float parsing) once, at load time.
#
# Settings are a frozen dataclass rather than module globals so that the app
# factory and the tests can build their own instance.
# ---------------------------------------------------------------------------

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv
from sqlalchemy.engine import URL


def _env_int(name: str, default: int) -> int:
    """Read an integer environment variable with a safe fallback."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    """Read a float environment variable; `0` or negative disables the value."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else None


def _env_bool(name: str, default: bool = False) -> bool:
    """Read a boolean environment variable.

    Truthy values: 1, true, yes, y, on (case-insensitive).
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_list(name: str, default: Tuple[str, ...] = ()) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class DatabaseSettings:
    """Connection and pool parameters for the stored-routine database."""

    server: str = "localhost"
    port: int = 1433
    name: str = "app"
    user: str = "sa"
    password: str = ""
    driver: str = "ODBC Driver 18 for SQL Server"
    encrypt: bool = True
    trust_server_certificate: bool = True
    # Full SQLAlchemy URL; wins over the individual pieces when set.
    url_override: Optional[str] = None

    pool_size: int = 10
    max_overflow: int = 10
    # Seconds per routine execution; None means unbounded.
    command_timeout: Optional[float] = 30.0
    # Attempts for the initial pool connect (1 disables retrying).
    connect_attempts: int = 3
    # Exponential backoff multiplier (seconds) between connect attempts.
    connect_backoff: float = 0.5

    @property
    def url(self) -> str | URL:
        if self.url_override:
            return self.url_override
        return URL.create(
            "mssql+aioodbc",
            username=self.user,
            password=self.password,
            host=self.server,
            port=self.port,
            database=self.name,
            query={
                "driver": self.driver,
                "Encrypt": "yes" if self.encrypt else "no",
                "TrustServerCertificate": "yes" if self.trust_server_certificate else "no",
            },
        )


@dataclass(frozen=True)
class Settings:
    # Environment name; "development" enables tracebacks in error responses.
    app_env: str = "development"
    api_version: str = "v1"
    # 10 MiB request body limit (often also enforced at the reverse proxy).
    max_body_bytes: int = 10 * 1024 * 1024
    cors_origins: Tuple[str, ...] = ("*",)
    log_level: str = "INFO"
    database: DatabaseSettings = field(default_factory=DatabaseSettings)

    @property
    def include_error_details(self) -> bool:
        return self.app_env == "development"


def load_settings() -> Settings:
    """Build settings from the environment (and `.env`, if present)."""
    load_dotenv()

    database = DatabaseSettings(
        server=os.getenv("DB_SERVER", "localhost"),
        port=_env_int("DB_PORT", 1433),
        name=os.getenv("DB_NAME", "app"),
        user=os.getenv("DB_USER", "sa"),
        password=os.getenv("DB_PASSWORD", ""),
        driver=os.getenv("DB_DRIVER", "ODBC Driver 18 for SQL Server"),
        encrypt=_env_bool("DB_ENCRYPT", default=True),
        trust_server_certificate=_env_bool("DB_TRUST_SERVER_CERTIFICATE", default=True),
        url_override=os.getenv("DATABASE_URL") or None,
        pool_size=_env_int("DB_POOL_SIZE", 10),
        max_overflow=_env_int("DB_MAX_OVERFLOW", 10),
        command_timeout=_env_float("DB_COMMAND_TIMEOUT_SECONDS", 30.0),
        connect_attempts=max(1, _env_int("DB_CONNECT_ATTEMPTS", 3)),
        connect_backoff=_env_float("DB_CONNECT_BACKOFF_SECONDS", 0.5) or 0.0,
    )

    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        api_version=os.getenv("API_VERSION", "v1"),
        max_body_bytes=_env_int("MAX_BODY_BYTES", 10 * 1024 * 1024),
        cors_origins=_env_list("CORS_ORIGINS", ("*",)),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        database=database,
    )
