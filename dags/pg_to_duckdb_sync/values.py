"""
Typed values for rows read from the source.

The source returns every column as text. Each value is classified exactly once,
when the row is read, into a tagged ``Scalar``. The target schema is then fixed
from the first batch of a table (``infer_column_types``) and every later value is
conformed to that schema with ``Scalar.as_type``.
"""
from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

from pg_to_duckdb_sync.errors import SchemaError

LOG = logging.getLogger(__name__)

INT64_MIN, INT64_MAX = -(2**63), 2**63 - 1

_INT_RE = re.compile(r"^[+-]?(0|[1-9]\d*)$")   # no leading zeros: "007" stays text
_FLOAT_RE = re.compile(r"^[+-]?((0|[1-9]\d*)(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_FLOAT_SPECIAL = {"nan", "infinity", "+infinity", "-infinity"}   # PostgreSQL float8 text
_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_TS_RE = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2})[ T](?P<hm>\d{2}:\d{2})(?::(?P<s>\d{2})(?:\.(?P<frac>\d{1,9}))?)?"
    r"(?P<tz>Z|[+-]\d{2}(?::?\d{2})?)?$"
)
_TRUE = {"t", "true"}
_FALSE = {"f", "false"}


class ColumnType(str, enum.Enum):
    NULL = "null"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    FLOAT = "float"
    TIMESTAMP = "timestamp"
    DATE = "date"
    TEXT = "text"

    @property
    def duckdb_type(self) -> str:
        return _DUCKDB_TYPES[self]


_DUCKDB_TYPES = {
    ColumnType.NULL: "VARCHAR",
    ColumnType.BOOLEAN: "BOOLEAN",
    ColumnType.INTEGER: "BIGINT",
    ColumnType.FLOAT: "DOUBLE",
    ColumnType.TIMESTAMP: "TIMESTAMP",
    ColumnType.DATE: "DATE",
    ColumnType.TEXT: "VARCHAR",
}


# ============================== Classifier ===============================

def _parse_timestamp(m: re.Match) -> datetime:
    frac = (m.group("frac") or "")[:6].ljust(6, "0")
    tz = m.group("tz")
    iso = f"{m.group('date')}T{m.group('hm')}:{m.group('s') or '00'}.{frac}"
    if tz:
        if tz == "Z":
            tz = "+00:00"
        elif len(tz) == 3:                # +05
            tz = tz + ":00"
        elif ":" not in tz:               # +0530
            tz = f"{tz[:3]}:{tz[3:]}"
        iso += tz
    dt = datetime.fromisoformat(iso)
    if dt.tzinfo is not None:
        # stored as UTC wall time in a TIMESTAMP column
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def classify_text(text: str | None) -> Tuple[ColumnType, Any]:
    """
    Deterministic text -> (type, value) classifier. Order matters:
    boolean, integer, float, date, timestamp, else text.
    """
    if text is None:
        return ColumnType.NULL, None
    low = text.strip().lower()
    if low in _TRUE:
        return ColumnType.BOOLEAN, True
    if low in _FALSE:
        return ColumnType.BOOLEAN, False
    if _INT_RE.match(text):
        v = int(text)
        if INT64_MIN <= v <= INT64_MAX:
            return ColumnType.INTEGER, v
        return ColumnType.TEXT, text
    if _FLOAT_RE.match(text) or text.lower() in _FLOAT_SPECIAL:
        return ColumnType.FLOAT, float(text)
    if _DATE_RE.match(text):
        try:
            return ColumnType.DATE, date.fromisoformat(text)
        except ValueError:
            return ColumnType.TEXT, text
    m = _TS_RE.match(text)
    if m:
        try:
            return ColumnType.TIMESTAMP, _parse_timestamp(m)
        except ValueError:
            return ColumnType.TEXT, text
    return ColumnType.TEXT, text


@dataclass(frozen=True)
class Scalar:
    """One typed value plus the text it was read from."""

    kind: ColumnType
    value: Any
    text: str | None

    @classmethod
    def from_text(cls, text: str | None) -> "Scalar":
        kind, value = classify_text(text)
        return cls(kind, value, text)

    def as_type(self, column_type: ColumnType) -> Any:
        """Python value to bind for a column of ``column_type``."""
        if self.kind is ColumnType.NULL:
            return None
        if self.kind is column_type:
            return self.value
        if column_type is ColumnType.TEXT or column_type is ColumnType.NULL:
            return self.text
        if column_type is ColumnType.FLOAT and self.kind is ColumnType.INTEGER:
            return float(self.value)
        if column_type is ColumnType.TIMESTAMP and self.kind is ColumnType.DATE:
            return datetime(self.value.year, self.value.month, self.value.day)
        raise SchemaError(f"value {self.text!r} does not fit column type {column_type.value}")


# ============================== Rows ===============================

@dataclass(frozen=True)
class Row:
    """Ordered column -> Scalar mapping, plus the primary key exactly as the source printed it."""

    values: Dict[str, Scalar]
    key: Tuple[str, ...]

    @classmethod
    def from_text(cls, columns: Sequence[str], raw: Sequence[str | None], primary_key: Sequence[str]) -> "Row":
        values = {c: Scalar.from_text(v) for c, v in zip(columns, raw)}
        key = []
        for c in primary_key:
            s = values.get(c)
            if s is None or s.text is None:
                raise ValueError(f"primary key column {c!r} is NULL")
            key.append(s.text)
        return cls(values, tuple(key))


# ============================== Column typing ===============================

def unify(kinds: Iterable[ColumnType]) -> ColumnType:
    seen = {k for k in kinds if k is not ColumnType.NULL}
    if not seen:
        return ColumnType.TEXT
    if len(seen) == 1:
        return seen.pop()
    if seen == {ColumnType.INTEGER, ColumnType.FLOAT}:
        return ColumnType.FLOAT
    if seen == {ColumnType.DATE, ColumnType.TIMESTAMP}:
        return ColumnType.TIMESTAMP
    return ColumnType.TEXT


def infer_column_types(rows: Sequence[Mapping[str, Scalar]]) -> Dict[str, ColumnType]:
    """Column types from one batch of projected rows; column order follows the first row."""
    if not rows:
        return {}
    columns: List[str] = list(rows[0].keys())
    types = {c: unify(r[c].kind for r in rows if c in r) for c in columns}
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Inferred column types: %s", {c: t.value for c, t in types.items()})
    return types


def column_type_from_duckdb(data_type: str) -> ColumnType:
    """ColumnType for a DuckDB ``information_schema.columns.data_type`` of an existing table."""
    base = data_type.strip().upper().split("(", 1)[0].strip()
    if base == "BOOLEAN":
        return ColumnType.BOOLEAN
    if base in _DUCKDB_INTEGERS:
        return ColumnType.INTEGER
    if base in ("DOUBLE", "FLOAT", "REAL", "DECIMAL", "NUMERIC"):
        return ColumnType.FLOAT
    if base.startswith("TIMESTAMP"):
        return ColumnType.TIMESTAMP
    if base == "DATE":
        return ColumnType.DATE
    # VARCHAR and anything without a native counterpart is bound as text
    return ColumnType.TEXT


_DUCKDB_INTEGERS = {
    "TINYINT", "SMALLINT", "INTEGER", "BIGINT", "HUGEINT",
    "UTINYINT", "USMALLINT", "UINTEGER", "UBIGINT", "UHUGEINT",
}
