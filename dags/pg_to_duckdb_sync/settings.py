from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping

from dotenv import load_dotenv

from pg_to_duckdb_sync.errors import ConfigurationError
from pg_to_duckdb_sync.retry import RetryPolicy

LOG = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000
MAX_BATCH_SIZE = 100_000

# ============================== Settings model ===============================

@dataclass(frozen=True)
class SourceSettings:
    dsn: str = field(repr=False)
    connect_timeout: int = 30                 # seconds
    statement_timeout_ms: int = 300_000       # per statement, SET LOCAL in every source transaction
    application_name: str = "pg_to_duckdb_sync"


@dataclass(frozen=True)
class TargetSettings:
    database: str = "md:analytics"            # "md:<db>" for MotherDuck, or a local .duckdb path
    token: str | None = field(default=None, repr=False)
    schema: str = "main"
    create_database: bool = True              # MotherDuck only

    @property
    def is_motherduck(self) -> bool:
        return self.database.startswith("md:")


@dataclass(frozen=True)
class SyncSettings:
    source: SourceSettings
    target: TargetSettings
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    batch_size: int = DEFAULT_BATCH_SIZE
    max_records: int = 0                      # per table per run; 0 = unlimited

    def __post_init__(self):
        if not 1 <= self.batch_size <= MAX_BATCH_SIZE:
            raise ConfigurationError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}, got {self.batch_size}")
        if self.max_records < 0:
            raise ConfigurationError(f"max_records must not be negative, got {self.max_records}")


# ============================== Environment loading ===============================

def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def parse_bool(value, name: str, default: bool) -> bool:
    """Booleans from env vars or JSON: true/false, 1/0, yes/no, on/off."""
    if isinstance(value, bool):
        return value
    raw = str(value if value is not None else "").strip().lower()
    if not raw:
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    return parse_bool(env.get(name), name, default)


def retry_from_env(env: Mapping[str, str]) -> RetryPolicy:
    return RetryPolicy(
        max_retries=_env_int(env, "SYNC_MAX_RETRIES", 3),
        initial_backoff=_env_int(env, "SYNC_INITIAL_BACKOFF_MS", 1000) / 1000.0,
        max_backoff=_env_int(env, "SYNC_MAX_BACKOFF_MS", 60_000) / 1000.0,
        multiplier=_env_float(env, "SYNC_BACKOFF_MULTIPLIER", 2.0),
        jitter=_env_bool(env, "SYNC_BACKOFF_JITTER", True),
    )


def settings_from_env(env: Mapping[str, str] | None = None, *, dotenv: bool = True) -> SyncSettings:
    """
    Read settings from the process environment (after loading a .env file, if any).

    Required: DATABASE_URL (or POSTGRES_URL); MOTHERDUCK_TOKEN unless MOTHERDUCK_DATABASE
    points to a local DuckDB file.
    """
    if env is None:
        if dotenv:
            load_dotenv()
        env = os.environ

    dsn = env.get("DATABASE_URL") or env.get("POSTGRES_URL")
    if not dsn:
        raise ConfigurationError("DATABASE_URL or POSTGRES_URL not set")

    database = env.get("MOTHERDUCK_DATABASE") or "analytics"
    if not database.startswith("md:") and not database.endswith((".duckdb", ".db")) and database != ":memory:":
        database = f"md:{database}"
    token = env.get("MOTHERDUCK_TOKEN") or None
    if database.startswith("md:") and not token:
        raise ConfigurationError("MOTHERDUCK_TOKEN not set")

    settings = SyncSettings(
        source=SourceSettings(
            dsn=dsn,
            connect_timeout=_env_int(env, "POSTGRES_CONNECT_TIMEOUT", 30),
            statement_timeout_ms=_env_int(env, "POSTGRES_STATEMENT_TIMEOUT_MS", 300_000),
        ),
        target=TargetSettings(
            database=database,
            token=token,
            schema=env.get("MOTHERDUCK_SCHEMA") or "main",
            create_database=_env_bool(env, "MOTHERDUCK_CREATE_DATABASE", True),
        ),
        retry=retry_from_env(env),
        batch_size=_env_int(env, "SYNC_BATCH_SIZE", DEFAULT_BATCH_SIZE),
        max_records=_env_int(env, "SYNC_MAX_RECORDS", 0),
    )
    LOG.info(
        "Settings loaded: target=%s schema=%s batch_size=%d max_records=%d retry=%s",
        settings.target.database, settings.target.schema, settings.batch_size, settings.max_records, settings.retry,
    )
    return settings
