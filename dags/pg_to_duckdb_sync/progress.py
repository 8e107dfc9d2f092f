from __future__ import annotations

import enum
import logging
from typing import Callable, Optional

LOG = logging.getLogger(__name__)


class Checkpoint(str, enum.Enum):
    TABLE_START = "table_start"
    BATCH_COMPLETE = "batch_complete"
    TABLE_COMPLETE = "table_complete"
    TABLE_FAILED = "table_failed"

    def __str__(self) -> str:
        return self.value


# observer(table, phase, rows_processed, total_rows); total_rows is None when unknown
ProgressObserver = Callable[[str, Checkpoint, int, Optional[int]], None]


def log_observer(logger: logging.Logger | None = None) -> ProgressObserver:
    """Observer that writes every checkpoint to a logger (Airflow task log)."""
    log = logger or LOG

    def _observe(table: str, phase: Checkpoint, rows_processed: int, total_rows: Optional[int]) -> None:
        if phase is Checkpoint.TABLE_FAILED:
            log.warning("[%s] %s after %d row(s)", table, phase, rows_processed)
        elif phase is Checkpoint.BATCH_COMPLETE:
            log.debug("[%s] %s: %d/%s row(s)", table, phase, rows_processed, total_rows if total_rows is not None else "?")
        else:
            log.info("[%s] %s: %d row(s)", table, phase, rows_processed)

    return _observe
