from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Ensure environment variables from .env are available when running locally.
try:
    load_dotenv()
except PermissionError:
    logger.warning(
        "Could not read .env file due to insufficient permissions. "
        "Continuing with existing environment variables.",
    )

DEFAULT_SQLITE_URL = "sqlite://sketch2agent.db"
MODEL_MODULES = ["shared.database.workflow_models"]


def _get_bool(name: str, default: str = "false") -> bool:
    """Read boolean-ish environment variables safely."""
    value = os.getenv(name, default)
    return value.lower() in {"1", "true", "yes", "on"}


def _parse_postgres_credentials(url: str) -> Dict[str, Any]:
    """Convert a postgres-style DSN into asyncpg credential kwargs."""
    parsed = urlparse(url)
    if parsed.scheme not in {"postgres", "postgresql"}:
        raise ValueError("DATABASE_URL must use postgres:// or postgresql:// scheme")

    database = (parsed.path or "").lstrip("/") or "postgres"
    schema = os.getenv("DB_SCHEMA", "public")

    credentials = {
        "host": parsed.hostname or "localhost",
        "port": parsed.port or 5432,
        "user": parsed.username,
        "password": parsed.password,
        "database": database,
        "minsize": DB_MIN_CONNECTIONS,
        "maxsize": DB_MAX_CONNECTIONS,
    }

    # asyncpg doesn't support "schema" parameter directly
    if schema != "public":
        credentials["server_settings"] = {"search_path": schema}

    return credentials


def build_connection(url: Optional[str]) -> Dict[str, Any]:
    """Tortoise connection entry for a postgres or sqlite DATABASE_URL."""
    url = url or DEFAULT_SQLITE_URL
    if url.startswith("sqlite://"):
        file_path = url.removeprefix("sqlite://") or ":memory:"
        return {
            "engine": "tortoise.backends.sqlite",
            "credentials": {"file_path": file_path},
        }
    return {
        "engine": "tortoise.backends.asyncpg",
        "credentials": _parse_postgres_credentials(url),
    }


def build_tortoise_config(url: Optional[str]) -> Dict[str, Any]:
    return {
        "connections": {"default": build_connection(url)},
        "apps": {
            "models": {
                "models": list(MODEL_MODULES),
                "default_connection": "default",
            },
        },
        "use_tz": True,
        "timezone": "UTC",
    }


DATABASE_URL = os.getenv("DATABASE_URL")
DB_MAX_CONNECTIONS = int(os.getenv("DB_MAX_CONNECTIONS", "10"))
DB_MIN_CONNECTIONS = int(os.getenv("DB_MIN_CONNECTIONS", "1"))
# sqlite deployments have no migrations, so schemas are generated unless told otherwise
DB_GENERATE_SCHEMAS = _get_bool(
    "DB_GENERATE_SCHEMAS",
    "true" if (DATABASE_URL or DEFAULT_SQLITE_URL).startswith("sqlite://") else "false",
)

try:
    TORTOISE_ORM: Dict[str, Any] = build_tortoise_config(DATABASE_URL)
except ValueError as exc:
    raise RuntimeError(f"Invalid DATABASE_URL: {exc}") from exc


__all__ = [
    "DATABASE_URL",
    "DB_GENERATE_SCHEMAS",
    "DB_MAX_CONNECTIONS",
    "DB_MIN_CONNECTIONS",
    "MODEL_MODULES",
    "TORTOISE_ORM",
    "build_tortoise_config",
]
