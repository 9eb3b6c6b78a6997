"""Digit server configuration.

Frozen dataclass loaded from environment variables. Loads
~/.digit_server/server.env first when it exists. The NODE_ORACLEDB_*
variables used by the old launch script are accepted as fallbacks for the
database credentials.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# (primary, legacy fallback)
_CREDENTIAL_VARS = (
    ("DB_USER", "NODE_ORACLEDB_USER"),
    ("DB_PASSWORD", "NODE_ORACLEDB_PASSWORD"),
    ("DB_CONNECT_STRING", "NODE_ORACLEDB_CONNECTIONSTRING"),
)


def _env(name: str, fallback: str | None = None, default: str = "") -> str:
    value = os.environ.get(name, "").strip()
    if not value and fallback:
        value = os.environ.get(fallback, "").strip()
    return value or default


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class Config:
    """Immutable digit server configuration."""

    # Database
    db_user: str
    db_password: str
    db_connect_string: str

    # HTTP server
    host: str
    port: int

    # Connection pool
    pool_min: int
    pool_max: int
    pool_timeout: float
    shutdown_grace_seconds: float

    # Model
    model_name: str
    include_probability: bool

    # Logging
    log_level: str

    @classmethod
    def load(cls) -> Config:
        """Load configuration from environment variables.

        Raises ValueError if a database credential is missing or the pool
        bounds are inconsistent.
        """
        env_file = Path.home() / ".digit_server" / "server.env"
        if env_file.exists():
            load_dotenv(env_file)

        missing = [
            primary for primary, fallback in _CREDENTIAL_VARS
            if not _env(primary, fallback)
        ]
        if missing:
            raise ValueError(
                f"Missing required environment variables: {', '.join(missing)}"
            )

        pool_min = int(_env("POOL_MIN", default="0"))
        pool_max = int(_env("POOL_MAX", default="4"))
        if pool_max < 1:
            raise ValueError("POOL_MAX must be at least 1")
        if pool_min < 0 or pool_min > pool_max:
            raise ValueError("POOL_MIN must be between 0 and POOL_MAX")

        return cls(
            db_user=_env("DB_USER", "NODE_ORACLEDB_USER"),
            db_password=_env("DB_PASSWORD", "NODE_ORACLEDB_PASSWORD"),
            db_connect_string=_env("DB_CONNECT_STRING", "NODE_ORACLEDB_CONNECTIONSTRING"),
            host=_env("HTTP_HOST", default="0.0.0.0"),
            port=int(_env("HTTP_PORT", default="7000")),
            pool_min=pool_min,
            pool_max=pool_max,
            pool_timeout=float(_env("POOL_TIMEOUT", default="60")),
            shutdown_grace_seconds=float(_env("SHUTDOWN_GRACE_SECONDS", default="10")),
            model_name=_env("MODEL_NAME", default="DEEP_LEARNING_MODEL"),
            include_probability=_env_bool("INCLUDE_PROBABILITY"),
            log_level=_env("LOG_LEVEL", default="INFO").upper(),
        )
