from __future__ import annotations

import enum
import json
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Tuple

from pg_to_duckdb_sync.TableMapping import SyncMode


def _json_sanitize(value: Any) -> Any:
    """
    Ensure value is JSON-serializable (safe for Airflow XCom push).
    Enums become their values, datetimes their ISO text via default=str.
    """
    return json.loads(json.dumps(value, default=str))


class TableState(str, enum.Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    WRITING = "writing"
    MARKING = "marking"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"     # not started: the run was cancelled first

    def __str__(self) -> str:
        return self.value

    @property
    def terminal(self) -> bool:
        return self in (TableState.DONE, TableState.FAILED, TableState.CANCELLED)


@dataclass(frozen=True)
class TableSyncResult:
    source_table: str
    target_table: str
    state: TableState
    rows_fetched: int = 0
    rows_written: int = 0
    rows_marked: int = 0
    batches: int = 0
    elapsed: float = 0.0
    error: str | None = None
    error_code: str | None = None
    failed_phase: TableState | None = None
    table_created: bool = False

    @property
    def success(self) -> bool:
        return self.state is TableState.DONE


@dataclass(frozen=True)
class SyncResult:
    mode: SyncMode
    tables: Tuple[TableSyncResult, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
    elapsed: float = 0.0
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.cancelled and all(t.success for t in self.tables)

    @property
    def failed_tables(self) -> List[TableSyncResult]:
        return [t for t in self.tables if t.state is TableState.FAILED]

    @property
    def total_rows_fetched(self) -> int:
        return sum(t.rows_fetched for t in self.tables)

    @property
    def total_rows_written(self) -> int:
        return sum(t.rows_written for t in self.tables)

    @property
    def total_rows_marked(self) -> int:
        return sum(t.rows_marked for t in self.tables)

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.update(
            success=self.success,
            failed_tables=[t.source_table for t in self.failed_tables],
            total_rows_fetched=self.total_rows_fetched,
            total_rows_written=self.total_rows_written,
            total_rows_marked=self.total_rows_marked,
        )
        return _json_sanitize(data)

    def summary(self) -> str:
        return (
            f"{self.mode} sync: {len(self.tables) - len(self.failed_tables)}/{len(self.tables)} table(s) ok, "
            f"{self.total_rows_written} row(s) written, {self.total_rows_marked} marked in {self.elapsed:.1f}s"
        )
