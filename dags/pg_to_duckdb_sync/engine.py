from __future__ import annotations

import logging
import threading
import time
from contextlib import closing
from datetime import datetime, timezone
from itertools import islice
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from pg_to_duckdb_sync.TableMapping import SyncMode, TableMapping, validate_mappings
from pg_to_duckdb_sync.errors import ConfigurationError, PartialWriteError, QueryError, SyncError, error_code, redact
from pg_to_duckdb_sync.progress import Checkpoint, ProgressObserver
from pg_to_duckdb_sync.results import SyncResult, TableState, TableSyncResult
from pg_to_duckdb_sync.settings import SyncSettings
from pg_to_duckdb_sync.source import PostgresSource
from pg_to_duckdb_sync.target import DuckDBTarget
from pg_to_duckdb_sync.values import Row, infer_column_types


def _batched(rows: Iterable[Row], size: int) -> Iterator[List[Row]]:
    it = iter(rows)
    while True:
        batch = list(islice(it, size))
        if not batch:
            return
        yield batch


class SyncEngine:
    """
    Runs enabled table mappings one after another: fetch a batch from PostgreSQL,
    upsert it into DuckDB, flip the sync flag on the source, repeat.
    A failing table is recorded in the result and the run moves on to the next one.
    """

    def __init__(
        self,
        source: PostgresSource,
        target: DuckDBTarget,
        mappings: Sequence[TableMapping],
        *,
        batch_size: int = 1000,
        max_records: int = 0,
        observer: ProgressObserver | None = None,
        logger: logging.Logger | None = None,
    ):
        if batch_size < 1:
            raise ConfigurationError(f"batch_size must be positive, got {batch_size}")
        if max_records < 0:
            raise ConfigurationError(f"max_records must not be negative, got {max_records}")
        self.source = source
        self.target = target
        self.mappings = validate_mappings(mappings)
        self.batch_size = batch_size
        self.max_records = max_records
        self.observer = observer
        self.log = logger or logging.getLogger(__name__)
        self._cancelled = threading.Event()
        self.log.debug(
            "SyncEngine initialized: %d mapping(s), batch_size=%d, max_records=%d",
            len(self.mappings), batch_size, max_records,
        )

    @classmethod
    def from_settings(cls, settings: SyncSettings, mappings: Sequence[TableMapping], *,
                      observer: ProgressObserver | None = None, logger: logging.Logger | None = None) -> "SyncEngine":
        return cls(
            PostgresSource(settings.source, settings.retry, logger=logger),
            DuckDBTarget(settings.target, settings.retry, logger=logger),
            mappings,
            batch_size=settings.batch_size,
            max_records=settings.max_records,
            observer=observer,
            logger=logger,
        )

    @property
    def enabled_mappings(self) -> List[TableMapping]:
        return [m for m in self.mappings if m.enabled]

    def cancel(self) -> None:
        """Stop before the next table starts; the table in progress runs to completion."""
        self.log.warning("Cancellation requested")
        self._cancelled.set()

    def _secrets(self) -> List[str]:
        return [
            getattr(getattr(self.source, "settings", None), "dsn", None),
            getattr(getattr(self.target, "settings", None), "token", None),
        ]

    def _notify(self, table: str, phase: Checkpoint, rows: int, total: Optional[int] = None) -> None:
        if self.observer is None:
            return
        try:
            self.observer(table, phase, rows, total)
        except Exception:
            self.log.warning("Progress observer raised at %s for %s; ignoring", phase, table, exc_info=True)

    # ------------------------ Run ------------------------

    def sync(self, mode: SyncMode | str = SyncMode.INCREMENTAL) -> SyncResult:
        """
        Sync every enabled mapping in declaration order. Table failures never raise;
        they are reported in the returned SyncResult.
        """
        mode = SyncMode(mode)
        started_at = datetime.now(timezone.utc)
        t0 = time.perf_counter()
        self.log.info("Starting %s sync of %d table(s)", mode, len(self.enabled_mappings))

        tables: List[TableSyncResult] = []
        for mapping in self.mappings:
            if not mapping.enabled:
                self.log.info("Skipping disabled mapping %s", mapping.describe())
                continue
            if self._cancelled.is_set():
                self.log.warning("Run cancelled; %s not started", mapping.describe())
                tables.append(TableSyncResult(mapping.source_table, mapping.target_table, TableState.CANCELLED))
                continue
            tables.append(self.sync_table(mapping, mode))

        result = SyncResult(
            mode=mode,
            tables=tuple(tables),
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            elapsed=round(time.perf_counter() - t0, 3),
            cancelled=self._cancelled.is_set(),
        )
        if result.success:
            self.log.info(result.summary())
        else:
            self.log.error("%s; failed: %s", result.summary(), [t.source_table for t in result.failed_tables])
        return result

    def sync_table(self, mapping: TableMapping, mode: SyncMode) -> TableSyncResult:
        self.log.info("sync_table: %s mode=%s batch_size=%d pk=%s", mapping.describe(), mode, self.batch_size, mapping.primary_key)
        t0 = time.perf_counter()
        phase = TableState.FETCHING
        fetched = written = marked = batches = 0
        created = False

        self._notify(mapping.source_table, Checkpoint.TABLE_START, 0)
        try:
            with self.source.connection() as src, self.target.connection() as dst:
                columns = self.source.columns(src, mapping)
                mapping.check_projection(columns)
                has_flag = self.source.has_column(src, mapping, mapping.sync_flag_column)
                read_mode = mode
                if not has_flag:
                    if mode is SyncMode.INCREMENTAL and mapping.mark_synced:
                        raise QueryError(
                            f"sync flag column {mapping.sync_flag_column!r} not found; add it or set mark_synced to false",
                            table=mapping.source_table,
                        )
                    if mode is SyncMode.INCREMENTAL:
                        # read-only source without a flag: every run transfers every row
                        read_mode = SyncMode.FULL
                    self.log.warning(
                        "%s has no column %r; rows are transferred without marking",
                        mapping.source_table, mapping.sync_flag_column,
                    )
                mark = mapping.mark_synced and has_flag

                column_types = None
                rows = self.source.fetch(src, mapping, read_mode, self.batch_size, self.max_records, columns=columns)
                with closing(rows):
                    for batch in _batched(rows, self.batch_size):
                        t_batch = time.perf_counter()
                        fetched += len(batch)

                        phase = TableState.WRITING
                        if column_types is None:
                            # the first batch types a new table; an existing table keeps its own types
                            column_types = infer_column_types([mapping.project(r) for r in batch])
                            created = self.target.ensure_schema(dst, mapping, column_types)
                            if not created:
                                column_types = self.target.conform_column_types(dst, mapping, column_types)
                        try:
                            written += self.target.batch_upsert(dst, mapping, batch, column_types, self.batch_size)
                        except PartialWriteError as e:
                            written += e.rows_written
                            raise
                        except SyncError as e:
                            if written:
                                raise PartialWriteError(e.message, table=mapping.target_table, rows_written=written) from e
                            raise

                        if mark:
                            phase = TableState.MARKING
                            marked += self.source.mark_synced(src, mapping, [r.key for r in batch], self.batch_size)
                        batches += 1
                        phase = TableState.FETCHING
                        self.log.info(
                            "Batch %d of %s done (fetched=%d written=%d marked=%d, took %.3fs)",
                            batches, mapping.source_table, fetched, written, marked, time.perf_counter() - t_batch,
                        )
                        self._notify(mapping.source_table, Checkpoint.BATCH_COMPLETE, written)
        except Exception as e:
            if isinstance(e, SyncError):
                self.log.error("Sync of %s failed during %s: %s", mapping.describe(), phase, e)
            else:
                self.log.error("Sync of %s failed during %s", mapping.describe(), phase, exc_info=True)
            self._notify(mapping.source_table, Checkpoint.TABLE_FAILED, written)
            return TableSyncResult(
                mapping.source_table, mapping.target_table, TableState.FAILED,
                rows_fetched=fetched, rows_written=written, rows_marked=marked, batches=batches,
                elapsed=round(time.perf_counter() - t0, 3),
                error=redact(str(e), self._secrets()),
                error_code=error_code(e),
                failed_phase=phase,
                table_created=created,
            )

        result = TableSyncResult(
            mapping.source_table, mapping.target_table, TableState.DONE,
            rows_fetched=fetched, rows_written=written, rows_marked=marked, batches=batches,
            elapsed=round(time.perf_counter() - t0, 3),
            table_created=created,
        )
        self.log.info("sync_table result: %s", result)
        self._notify(mapping.source_table, Checkpoint.TABLE_COMPLETE, written, fetched)
        return result

    # ------------------------ Status / connectivity ------------------------

    def status(self) -> Dict[str, Optional[int]]:
        """Unsynced row count per enabled table; None where the count could not be read."""
        counts: Dict[str, Optional[int]] = {}
        with self.source.connection() as src:
            for mapping in self.enabled_mappings:
                try:
                    counts[mapping.source_table] = self.source.unsynced_count(src, mapping)
                except SyncError as e:
                    self.log.warning("Could not count unsynced rows in %s: %s", mapping.source_table, e)
                    counts[mapping.source_table] = None
        return counts

    def test_connectivity(self) -> Dict[str, Any]:
        report: Dict[str, Any] = {}
        for side, client in (("source", self.source), ("target", self.target)):
            t0 = time.perf_counter()
            try:
                with client.connection() as conn:
                    client.ping(conn)
                report[side] = {"ok": True, "error": None, "elapsed": round(time.perf_counter() - t0, 3)}
            except SyncError as e:
                self.log.error("%s connectivity check failed: %s", side, e)
                report[side] = {"ok": False, "error": redact(str(e), self._secrets()), "elapsed": round(time.perf_counter() - t0, 3)}
        report["ok"] = all(report[s]["ok"] for s in ("source", "target"))
        return report
