"""
Table catalog: a JSON document listing the tables to sync.

    {
      "pg_conn_id": "app_db",
      "batch_size": 1000,
      "max_records": 0,
      "sync_flag_column": "synced_to_motherduck",
      "retry": {"max_retries": 3, "initial_backoff_ms": 1000, "max_backoff_ms": 60000},
      "tables": [
        {"source_table": "public.users", "target_table": "users", "primary_key": ["id"]},
        {"source": "public.orders", "pk": "order_id, line_no", "filter": "status <> 'draft'"}
      ]
    }

Root-level ``sync_flag_column`` / ``mark_synced`` / ``enabled`` cascade into every
table entry unless the entry sets its own value.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Tuple

from pg_to_duckdb_sync.TableMapping import TableMapping, mapping_from_dict, validate_mappings
from pg_to_duckdb_sync.errors import ConfigurationError
from pg_to_duckdb_sync.retry import RetryPolicy
from pg_to_duckdb_sync.settings import DEFAULT_BATCH_SIZE, parse_bool

LOG = logging.getLogger(__name__)

CASCADE_KEYS = ("sync_flag_column", "mark_synced", "enabled")


@dataclass(frozen=True)
class Catalog:
    mappings: Tuple[TableMapping, ...]
    batch_size: int = DEFAULT_BATCH_SIZE
    max_records: int = 0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    pg_conn_id: str | None = None


def _cfg_get(root: Mapping[str, Any], tbl: Mapping[str, Any], key: str, default=None):
    return tbl.get(key, root.get(key, default))


def retry_from_dict(raw: Mapping[str, Any] | None) -> RetryPolicy:
    raw = dict(raw or {})
    try:
        values = dict(
            max_retries=int(raw.pop("max_retries", 3)),
            initial_backoff=float(raw.pop("initial_backoff_ms", 1000)) / 1000.0,
            max_backoff=float(raw.pop("max_backoff_ms", 60_000)) / 1000.0,
            multiplier=float(raw.pop("multiplier", 2.0)),
            jitter=parse_bool(raw.pop("jitter", True), "retry.jitter", True),
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"invalid retry settings: {e}") from e
    if raw:
        LOG.warning("Ignoring unknown retry keys: %s", sorted(raw))
    return RetryPolicy(**values)


def mappings_from_list(entries: Any, root: Mapping[str, Any] | None = None) -> List[TableMapping]:
    if not isinstance(entries, list):
        raise ConfigurationError(f"'tables' must be a list, got {type(entries).__name__}")
    root = root or {}
    mappings = []
    for i, tbl in enumerate(entries):
        if not isinstance(tbl, dict):
            raise ConfigurationError(f"table entry #{i} must be an object")
        defaults = {k: root[k] for k in CASCADE_KEYS if k in root and k not in tbl}
        mappings.append(mapping_from_dict(tbl, **defaults))
    return validate_mappings(mappings)


def parse_catalog(raw: Mapping[str, Any]) -> Catalog:
    if not isinstance(raw, dict):
        raise ConfigurationError("catalog must be a JSON object")
    if "tables" not in raw:
        raise ConfigurationError("catalog has no 'tables' list")
    mappings = mappings_from_list(raw["tables"], raw)
    try:
        batch_size = int(_cfg_get(raw, {}, "batch_size", DEFAULT_BATCH_SIZE))
        max_records = int(_cfg_get(raw, {}, "max_records", 0))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"invalid catalog setting: {e}") from e
    if batch_size < 1:
        raise ConfigurationError(f"batch_size must be positive, got {batch_size}")
    catalog = Catalog(
        mappings=tuple(mappings),
        batch_size=batch_size,
        max_records=max_records,
        retry=retry_from_dict(raw.get("retry")),
        pg_conn_id=raw.get("pg_conn_id"),
    )
    LOG.info(
        "Catalog: %d mapping(s) (%d enabled), batch_size=%d",
        len(catalog.mappings), sum(m.enabled for m in catalog.mappings), catalog.batch_size,
    )
    return catalog


def load_catalog(path: str | Path) -> Catalog:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Catalog file not found: {path}")
    text = path.read_text(encoding="utf-8").strip()
    if not text:
        raise ConfigurationError(f"Catalog file {path} is empty")
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in catalog file {path}: {e}") from e
    LOG.info("Loaded catalog from %s", path)
    return parse_catalog(raw)


def mappings_from_env(env: Mapping[str, str] | None = None) -> List[TableMapping]:
    """Mappings from SYNC_TABLES_JSON (a JSON list of table entries); empty when unset."""
    env = os.environ if env is None else env
    text = (env.get("SYNC_TABLES_JSON") or "").strip()
    if not text:
        return []
    try:
        entries = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"SYNC_TABLES_JSON is not valid JSON: {e}") from e
    root: Dict[str, Any] = {}
    if env.get("SYNC_FLAG_COLUMN"):
        root["sync_flag_column"] = env["SYNC_FLAG_COLUMN"]
    return mappings_from_list(entries, root)
