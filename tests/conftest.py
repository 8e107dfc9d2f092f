from __future__ import annotations

from contextlib import contextmanager
from typing import Dict, List, Optional

import pytest

from pg_to_duckdb_sync.TableMapping import SyncMode
from pg_to_duckdb_sync.retry import RetryPolicy
from pg_to_duckdb_sync.settings import TargetSettings
from pg_to_duckdb_sync.target import DuckDBTarget
from pg_to_duckdb_sync.values import Row

NO_WAIT = RetryPolicy(max_retries=2, initial_backoff=0.0, max_backoff=0.0, jitter=False)


class FakeTable:
    def __init__(self, columns: List[str], rows: List[Dict[str, Optional[str]]], flag: str | None = "synced_to_motherduck"):
        self.flag = flag
        self.columns = list(columns) + ([flag] if flag else [])
        self.rows = [dict(r) for r in rows]
        if flag:
            for r in self.rows:
                r.setdefault(flag, "false")


class FakeSource:
    """In-memory stand-in for PostgresSource; every value is text, as psycopg2 returns it for ::text."""

    def __init__(self, tables: Dict[str, FakeTable]):
        self.tables = tables
        self.fetch_errors: Dict[str, Exception] = {}
        self.mark_statements: List[int] = []
        self.connections = 0

    @contextmanager
    def connection(self):
        self.connections += 1
        yield self

    def ping(self, conn):
        return True

    def has_column(self, conn, mapping, column):
        return column in self.tables[mapping.source_table].columns

    def columns(self, conn, mapping):
        if mapping.columns:
            return list(mapping.columns)
        t = self.tables[mapping.source_table]
        return [c for c in t.columns if c != mapping.sync_flag_column]

    def _pending(self, table: FakeTable, mapping, mode):
        if mode is SyncMode.FULL:
            return list(table.rows)
        return [r for r in table.rows if r.get(mapping.sync_flag_column) != "true"]

    def fetch(self, conn, mapping, mode, batch_size, limit=0, columns=None):
        if mapping.source_table in self.fetch_errors:
            raise self.fetch_errors[mapping.source_table]
        table = self.tables[mapping.source_table]
        cols = list(columns) if columns is not None else self.columns(conn, mapping)
        snapshot = self._pending(table, mapping, mode)
        if limit:
            snapshot = snapshot[:limit]
        for r in snapshot:
            yield Row.from_text(cols, [r.get(c) for c in cols], mapping.primary_key)

    def mark_synced(self, conn, mapping, keys, batch_size):
        if not mapping.mark_synced or not keys:
            return 0
        table = self.tables[mapping.source_table]
        marked = 0
        for i in range(0, len(keys), batch_size):
            chunk = {tuple(k) for k in keys[i:i + batch_size]}
            self.mark_statements.append(len(chunk))
            for r in table.rows:
                if tuple(r[c] for c in mapping.primary_key) in chunk:
                    r[mapping.sync_flag_column] = "true"
                    marked += 1
        return marked

    def unsynced_count(self, conn, mapping):
        return len(self._pending(self.tables[mapping.source_table], mapping, SyncMode.INCREMENTAL))


class CountingTarget(DuckDBTarget):
    """DuckDBTarget that records every write transaction."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.transactions: List[int] = []

    def _write_chunk(self, conn, mapping, sql, params):
        super()._write_chunk(conn, mapping, sql, params)
        self.transactions.append(len(params))


@pytest.fixture
def target_settings(tmp_path):
    return TargetSettings(database=str(tmp_path / "analytics.duckdb"), schema="main")


@pytest.fixture
def target(target_settings):
    return CountingTarget(target_settings, NO_WAIT, sleep=lambda s: None)


@pytest.fixture
def duck(target):
    with target.connection() as conn:
        yield conn
