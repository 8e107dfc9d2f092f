from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Dict, Iterator, List, Mapping, Sequence

import duckdb

from pg_to_duckdb_sync.TableMapping import TableMapping
from pg_to_duckdb_sync.connections import open_duckdb, release_duckdb
from pg_to_duckdb_sync.errors import (
    ConnectionFailure,
    PartialWriteError,
    QueryError,
    SchemaError,
    SyncError,
    redact,
)
from pg_to_duckdb_sync.retry import RetryPolicy, call_with_retry
from pg_to_duckdb_sync.settings import TargetSettings
from pg_to_duckdb_sync.sql import column_list, fq_table, qi, split_table
from pg_to_duckdb_sync.values import ColumnType, Row, column_type_from_duckdb

LOG = logging.getLogger(__name__)

_CONNECTION_ERRORS = (duckdb.IOException, duckdb.ConnectionException, duckdb.HTTPException)
_SCHEMA_ERRORS = (
    duckdb.CatalogException,
    duckdb.BinderException,
    duckdb.ConversionException,
    duckdb.ConstraintException,
    duckdb.ParserException,
)

# ============================== SQL builders (pure) ===============================

def build_create_table_sql(fq: str, column_types: Mapping[str, ColumnType], primary_key: Sequence[str]) -> str:
    cols = ", ".join(f"{qi(c)} {t.duckdb_type}" for c, t in column_types.items())
    sql = f"CREATE TABLE IF NOT EXISTS {fq} ({cols}, PRIMARY KEY ({column_list(primary_key)}))"
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Generated CREATE TABLE SQL: %s", sql)
    return sql


def build_upsert_sql(fq: str, columns: Sequence[str]) -> str:
    placeholders = ", ".join("?" for _ in columns)
    sql = f"INSERT OR REPLACE INTO {fq} ({column_list(columns)}) VALUES ({placeholders})"
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Generated upsert SQL: %s", sql)
    return sql


def dedupe_last(rows: Sequence[Row]) -> List[Row]:
    """One row per primary key, keeping the last occurrence in its original position."""
    last: Dict[tuple, int] = {r.key: i for i, r in enumerate(rows)}
    return [r for i, r in enumerate(rows) if last[r.key] == i]


# ============================== Client ===============================

class DuckDBTarget:
    """
    Writes batches into DuckDB (local file or MotherDuck). Tables are created from the
    column types inferred on the first batch and are never altered afterwards.
    """

    def __init__(self, settings: TargetSettings, retry: RetryPolicy | None = None, *,
                 logger: logging.Logger | None = None, sleep=time.sleep):
        self.settings = settings
        self.retry = retry or RetryPolicy()
        self.log = logger or logging.getLogger(__name__)
        self._sleep = sleep

    def _retry(self, fn, what: str):
        return call_with_retry(fn, self.retry, what=what, sleep=self._sleep, logger=self.log)

    def _translate(self, exc: duckdb.Error, mapping: TableMapping | None, action: str) -> SyncError:
        table = mapping.target_table if mapping else None
        msg = redact(f"{action} failed: {str(exc).strip()}", [self.settings.token])
        if isinstance(exc, _CONNECTION_ERRORS):
            return ConnectionFailure(msg, table=table)
        if isinstance(exc, _SCHEMA_ERRORS):
            return SchemaError(msg, table=table)
        return QueryError(msg, table=table)

    def fq(self, mapping: TableMapping) -> str:
        return fq_table(mapping.target_table, self.settings.schema)

    # ------------------------ Connection ------------------------

    def _create_database(self) -> None:
        name = self.settings.database[len("md:"):].split("?", 1)[0]
        if not name:
            return
        conn = open_duckdb("md:", token=self.settings.token)
        try:
            conn.execute(f"CREATE DATABASE IF NOT EXISTS {qi(name)}")
            self.log.info("MotherDuck database %s ready", name)
        except duckdb.Error as e:
            raise self._translate(e, None, f"CREATE DATABASE {name}") from e
        finally:
            release_duckdb(conn)

    def _open(self):
        if self.settings.is_motherduck and self.settings.create_database:
            self._create_database()
        conn = open_duckdb(self.settings.database, token=self.settings.token)
        try:
            conn.execute(f"CREATE SCHEMA IF NOT EXISTS {qi(self.settings.schema)}")
        except duckdb.Error as e:
            release_duckdb(conn)
            raise self._translate(e, None, f"CREATE SCHEMA {self.settings.schema}") from e
        return conn

    @contextmanager
    def connection(self) -> Iterator[duckdb.DuckDBPyConnection]:
        conn = self._retry(self._open, what="DuckDB connect")
        try:
            yield conn
        finally:
            release_duckdb(conn)

    def ping(self, conn) -> bool:
        t0 = time.perf_counter()
        try:
            conn.execute("SELECT 1").fetchone()
        except duckdb.Error as e:
            raise self._translate(e, None, "Ping") from e
        self.log.info("DuckDB ping ok (%.3fs)", time.perf_counter() - t0)
        return True

    # ------------------------ Schema ------------------------

    def table_exists(self, conn, mapping: TableMapping) -> bool:
        schema, table = split_table(mapping.target_table, self.settings.schema)
        try:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM information_schema.tables
                WHERE table_catalog = current_database() AND table_schema = ? AND table_name = ?
                """,
                [schema, table],
            ).fetchone()
        except duckdb.Error as e:
            raise self._translate(e, mapping, "Table lookup") from e
        return bool(row[0])

    def ensure_schema(self, conn, mapping: TableMapping, column_types: Mapping[str, ColumnType]) -> bool:
        """
        Create the target table if it does not exist. Returns True when it was created.
        An existing table is left exactly as it is.
        """
        fq = self.fq(mapping)
        if self.table_exists(conn, mapping):
            self.log.info("Target table %s already exists; leaving schema untouched", fq)
            return False
        missing = [c for c in mapping.target_primary_key if c not in column_types]
        if missing:
            raise SchemaError(f"primary key column(s) {missing} missing from inferred columns", table=mapping.target_table)
        sql = build_create_table_sql(fq, column_types, mapping.target_primary_key)
        t0 = time.perf_counter()
        try:
            conn.execute(sql)
        except duckdb.Error as e:
            if isinstance(e, _CONNECTION_ERRORS):
                raise self._translate(e, mapping, "CREATE TABLE") from e
            raise SchemaError(redact(f"CREATE TABLE failed: {e}", [self.settings.token]), table=mapping.target_table) from e
        self.log.info(
            "Created target table %s (%s) in %.3fs",
            fq, ", ".join(f"{c} {t.duckdb_type}" for c, t in column_types.items()), time.perf_counter() - t0,
        )
        return True

    def existing_column_types(self, conn, mapping: TableMapping) -> Dict[str, ColumnType]:
        """Column types of the target table as it exists in DuckDB, in table order."""
        schema, table = split_table(mapping.target_table, self.settings.schema)
        try:
            rows = conn.execute(
                """
                SELECT column_name, data_type FROM information_schema.columns
                WHERE table_catalog = current_database() AND table_schema = ? AND table_name = ?
                ORDER BY ordinal_position
                """,
                [schema, table],
            ).fetchall()
        except duckdb.Error as e:
            raise self._translate(e, mapping, "Column lookup") from e
        return {name: column_type_from_duckdb(data_type) for name, data_type in rows}

    def conform_column_types(self, conn, mapping: TableMapping,
                             inferred: Mapping[str, ColumnType]) -> Dict[str, ColumnType]:
        """
        Bind types for writing ``inferred`` columns into an existing table: every column
        takes the type the table already has, so values that do not fit raise SchemaError
        instead of being cast by DuckDB.
        """
        existing = {c.lower(): t for c, t in self.existing_column_types(conn, mapping).items()}
        missing = [c for c in inferred if c.lower() not in existing]
        if missing:
            raise SchemaError(
                f"column(s) {missing} do not exist in target table {self.fq(mapping)}", table=mapping.target_table
            )
        return {c: existing[c.lower()] for c in inferred}

    # ------------------------ Writes ------------------------

    def _bind(self, mapping: TableMapping, rows: Sequence[Row], column_types: Mapping[str, ColumnType]) -> List[list]:
        params = []
        for row in rows:
            projected = mapping.project(row)
            values = []
            for col, col_type in column_types.items():
                scalar = projected.get(col)
                try:
                    values.append(None if scalar is None else scalar.as_type(col_type))
                except SchemaError as e:
                    raise SchemaError(f"column {col!r}: {e.message}", table=mapping.target_table) from e
            params.append(values)
        return params

    def _write_chunk(self, conn, mapping: TableMapping, sql: str, params: List[list]) -> None:
        try:
            conn.begin()
            conn.executemany(sql, params)
            conn.commit()
        except duckdb.Error as e:
            try:
                conn.rollback()
            except duckdb.Error:
                self.log.debug("Rollback after failed chunk on %s also failed", mapping.target_table, exc_info=True)
            raise self._translate(e, mapping, "Upsert") from e

    def batch_upsert(self, conn, mapping: TableMapping, rows: Sequence[Row],
                     column_types: Mapping[str, ColumnType], batch_size: int) -> int:
        """
        INSERT OR REPLACE ``rows`` keyed by the target primary key, ``batch_size`` rows per
        transaction. Returns the number of input rows written.
        If a chunk fails after earlier chunks committed, raises PartialWriteError.
        """
        if not rows:
            return 0
        fq = self.fq(mapping)
        columns = list(column_types)
        sql = build_upsert_sql(fq, columns)
        written = 0
        for start in range(0, len(rows), batch_size):
            chunk = rows[start:start + batch_size]
            unique = dedupe_last(chunk)
            t0 = time.perf_counter()
            try:
                params = self._bind(mapping, unique, column_types)
                self._retry(lambda: self._write_chunk(conn, mapping, sql, params), what=f"upsert {fq}")
            except SyncError as e:
                if written:
                    raise PartialWriteError(e.message, table=mapping.target_table, rows_written=written) from e
                raise
            written += len(chunk)
            self.log.info(
                "Chunk committed to %s (%d row(s), %d after dedupe, took %.3fs)",
                fq, len(chunk), len(unique), time.perf_counter() - t0,
            )
        return written

    def count_rows(self, conn, mapping: TableMapping) -> int:
        try:
            return int(conn.execute(f"SELECT COUNT(*) FROM {self.fq(mapping)}").fetchone()[0])
        except duckdb.Error as e:
            raise self._translate(e, mapping, "Count") from e
