from __future__ import annotations

import logging
import re
import time
import uuid
from contextlib import contextmanager
from typing import Iterator, List, Sequence, Tuple

import psycopg2
import psycopg2.extensions

from pg_to_duckdb_sync.TableMapping import SyncMode, TableMapping
from pg_to_duckdb_sync.connections import open_pg, release_pg
from pg_to_duckdb_sync.errors import ConnectionFailure, NotWritableError, QueryError, redact
from pg_to_duckdb_sync.retry import RetryPolicy, call_with_retry
from pg_to_duckdb_sync.settings import SourceSettings
from pg_to_duckdb_sync.sql import fq_table, qi, split_table
from pg_to_duckdb_sync.values import Row

LOG = logging.getLogger(__name__)

# object_not_in_prerequisite_state (non-updatable view), insufficient_privilege,
# read_only_sql_transaction (hot standby), wrong_object_type
_NOT_WRITABLE_PGCODES = {"55000", "42501", "25006", "42809"}
_PLAIN_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# ============================== SQL builders (pure) ===============================

def _order_clause(order_by: str | None) -> str:
    if not order_by:
        return ""
    # a bare column name is quoted; anything else ("created_at DESC, id") is used as written
    expr = qi(order_by) if _PLAIN_IDENT.match(order_by) else order_by
    return f" ORDER BY {expr}"


def _predicate(mapping: TableMapping, mode: SyncMode) -> str:
    conditions = []
    if mode is SyncMode.INCREMENTAL:
        # IS NOT TRUE also picks up rows whose flag is still NULL
        conditions.append(f"{qi(mapping.sync_flag_column)} IS NOT TRUE")
    if mapping.filter:
        conditions.append(f"({mapping.filter})")
    return f" WHERE {' AND '.join(conditions)}" if conditions else ""


def build_fetch_sql(mapping: TableMapping, columns: Sequence[str], mode: SyncMode, limit: int = 0) -> str:
    select = ", ".join(f"{qi(c)}::text" for c in columns)
    sql = f"SELECT {select} FROM {fq_table(mapping.source_table)}{_predicate(mapping, mode)}{_order_clause(mapping.order_by)}"
    if limit:
        sql += f" LIMIT {int(limit)}"
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Generated fetch SQL: %s", sql)
    return sql


def build_mark_sql(mapping: TableMapping) -> str:
    """UPDATE matching the primary key by its text form; one %s placeholder for the key tuple."""
    if len(mapping.primary_key) == 1:
        key_expr = f"{qi(mapping.primary_key[0])}::text"
    else:
        key_expr = "(" + ", ".join(f"{qi(c)}::text" for c in mapping.primary_key) + ")"
    sql = f"UPDATE {fq_table(mapping.source_table)} SET {qi(mapping.sync_flag_column)} = TRUE WHERE {key_expr} IN %s"
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Generated mark SQL: %s", sql)
    return sql


def build_count_sql(mapping: TableMapping) -> str:
    return f"SELECT COUNT(*) FROM {fq_table(mapping.source_table)}{_predicate(mapping, SyncMode.INCREMENTAL)}"


def _chunks(items: Sequence, size: int) -> Iterator[Sequence]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


# ============================== Client ===============================

class PostgresSource:
    """
    Reads rows (every column as text) from PostgreSQL and flips the sync flag
    on rows that reached the target. One connection per table, owned by the engine.
    """

    def __init__(self, settings: SourceSettings, retry: RetryPolicy | None = None, *,
                 logger: logging.Logger | None = None, sleep=time.sleep):
        self.settings = settings
        self.retry = retry or RetryPolicy()
        self.log = logger or logging.getLogger(__name__)
        self._sleep = sleep

    def _retry(self, fn, what: str):
        return call_with_retry(fn, self.retry, what=what, sleep=self._sleep, logger=self.log)

    def _translate(self, exc: psycopg2.Error, mapping: TableMapping | None, action: str) -> Exception:
        table = mapping.source_table if mapping else None
        msg = redact(f"{action} failed: {str(exc).strip()}", [self.settings.dsn])
        if isinstance(exc, (psycopg2.OperationalError, psycopg2.InterfaceError)):
            return ConnectionFailure(msg, table=table)
        if getattr(exc, "pgcode", None) in _NOT_WRITABLE_PGCODES:
            return NotWritableError(msg, table=table)
        return QueryError(msg, table=table)

    def _set_timeout(self, cur) -> None:
        if self.settings.statement_timeout_ms:
            cur.execute(f"SET LOCAL statement_timeout = {int(self.settings.statement_timeout_ms)}")

    # ------------------------ Connection ------------------------

    @contextmanager
    def connection(self) -> Iterator[psycopg2.extensions.connection]:
        conn = self._retry(
            lambda: open_pg(
                self.settings.dsn,
                connect_timeout=self.settings.connect_timeout,
                application_name=self.settings.application_name,
            ),
            what="PostgreSQL connect",
        )
        try:
            yield conn
        finally:
            release_pg(conn)

    def ping(self, conn) -> bool:
        t0 = time.perf_counter()
        try:
            with conn.cursor() as c:
                c.execute("SELECT 1")
                c.fetchone()
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            raise self._translate(e, None, "Ping") from e
        self.log.info("PostgreSQL ping ok (%.3fs)", time.perf_counter() - t0)
        return True

    # ------------------------ Introspection ------------------------

    def table_columns(self, conn, mapping: TableMapping) -> List[str]:
        """Every column of the source relation (tables and views), in ordinal order."""
        schema, table = split_table(mapping.source_table)
        t0 = time.perf_counter()
        try:
            with conn.cursor() as c:
                c.execute(
                    """
                    SELECT column_name
                    FROM information_schema.columns
                    WHERE table_schema = COALESCE(%s, current_schema()) AND table_name = %s
                    ORDER BY ordinal_position
                    """,
                    (schema, table),
                )
                cols = [r[0] for r in c.fetchall()]
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            raise self._translate(e, mapping, "Column introspection") from e
        if not cols:
            raise QueryError("source table not found or has no visible columns", table=mapping.source_table)
        self.log.info("Columns for %s: %s (%.3fs)", mapping.source_table, cols, time.perf_counter() - t0)
        return cols

    def has_column(self, conn, mapping: TableMapping, column: str) -> bool:
        return column in self.table_columns(conn, mapping)

    def columns(self, conn, mapping: TableMapping) -> List[str]:
        """The projection read for ``mapping``: the allow-list, else every column except the sync flag."""
        if mapping.columns:
            return list(mapping.columns)
        cols = [c for c in self.table_columns(conn, mapping) if c != mapping.sync_flag_column]
        missing = [c for c in mapping.primary_key if c not in cols]
        if missing:
            raise QueryError(f"primary key column(s) {missing} not found in source", table=mapping.source_table)
        return cols

    # ------------------------ Fetch ------------------------

    def _open_cursor(self, conn, mapping: TableMapping, sql: str, batch_size: int):
        # WITH HOLD keeps the cursor open across the commits issued by mark_synced
        # on this same connection.
        name = f"pg2duck_{uuid.uuid4().hex[:12]}"
        cur = None
        try:
            with conn.cursor() as c:
                self._set_timeout(c)
            cur = conn.cursor(name=name, withhold=True)
            cur.itersize = batch_size
            cur.execute(sql)
            conn.commit()
            return cur
        except psycopg2.Error as e:
            conn.rollback()
            if cur is not None and not cur.closed:
                try:
                    cur.close()
                except psycopg2.Error:
                    self.log.debug("Could not close cursor %s after failed open", name, exc_info=True)
            raise self._translate(e, mapping, "Fetch") from e

    def fetch(self, conn, mapping: TableMapping, mode: SyncMode, batch_size: int, limit: int = 0,
              columns: Sequence[str] | None = None) -> Iterator[Row]:
        """
        Lazily yield Rows for ``mapping``. Every value is read as text and
        classified once. Rows are pulled from the server ``batch_size`` at a time.
        """
        cols = list(columns) if columns is not None else self.columns(conn, mapping)
        sql = build_fetch_sql(mapping, cols, mode, limit)
        self.log.info(
            "Fetching %s (mode=%s, batch_size=%d, limit=%s)", mapping.source_table, mode, batch_size, limit or "none"
        )
        cur = self._retry(lambda: self._open_cursor(conn, mapping, sql, batch_size), what=f"fetch {mapping.source_table}")
        fetched = 0
        try:
            while True:
                try:
                    raw_rows = cur.fetchmany(batch_size)
                except psycopg2.Error as e:
                    conn.rollback()
                    raise self._translate(e, mapping, "Fetch") from e
                if not raw_rows:
                    break
                for raw in raw_rows:
                    try:
                        row = Row.from_text(cols, raw, mapping.primary_key)
                    except ValueError as e:
                        raise QueryError(str(e), table=mapping.source_table) from e
                    fetched += 1
                    yield row
        finally:
            try:
                if not cur.closed:
                    cur.close()
                conn.commit()
            except psycopg2.Error:
                self.log.debug("Could not close fetch cursor for %s", mapping.source_table, exc_info=True)
            self.log.info("Fetch for %s finished: %d row(s)", mapping.source_table, fetched)

    # ------------------------ Marking ------------------------

    def _mark_chunk(self, conn, mapping: TableMapping, sql: str, keys: Sequence[Tuple[str, ...]]) -> int:
        params = tuple(k[0] for k in keys) if len(mapping.primary_key) == 1 else tuple(tuple(k) for k in keys)
        try:
            with conn.cursor() as c:
                self._set_timeout(c)
                c.execute(sql, (params,))
                updated = c.rowcount
            conn.commit()
            return updated
        except psycopg2.Error as e:
            conn.rollback()
            raise self._translate(e, mapping, "Mark synced") from e

    def mark_synced(self, conn, mapping: TableMapping, keys: Sequence[Tuple[str, ...]], batch_size: int) -> int:
        """
        Set the sync flag on ``keys`` (primary-key tuples in their text form).
        Each chunk of ``batch_size`` keys is its own transaction. Returns rows updated.
        """
        if not mapping.mark_synced or not keys:
            return 0
        sql = build_mark_sql(mapping)
        marked = 0
        for chunk in _chunks(list(keys), batch_size):
            t0 = time.perf_counter()
            marked += self._retry(
                lambda: self._mark_chunk(conn, mapping, sql, chunk), what=f"mark synced {mapping.source_table}"
            )
            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug("Marked chunk of %d key(s) on %s (%.3fs)", len(chunk), mapping.source_table, time.perf_counter() - t0)
        self.log.info("Marked %d row(s) synced on %s", marked, mapping.source_table)
        return marked

    # ------------------------ Status ------------------------

    def unsynced_count(self, conn, mapping: TableMapping) -> int:
        sql = build_count_sql(mapping)
        try:
            with conn.cursor() as c:
                self._set_timeout(c)
                c.execute(sql)
                count = int(c.fetchone()[0])
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            raise self._translate(e, mapping, "Unsynced count") from e
        self.log.info("Unsynced rows in %s: %d", mapping.source_table, count)
        return count
