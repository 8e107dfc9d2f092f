from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Tuple

from pg_to_duckdb_sync.errors import ConfigurationError
from pg_to_duckdb_sync.settings import parse_bool

DEFAULT_SYNC_FLAG_COLUMN = "synced_to_motherduck"

# ============================== Sync mode ===============================

class SyncMode(str, enum.Enum):
    INCREMENTAL = "incremental"   # only rows whose sync flag is false
    FULL = "full"                 # every row, sync flag ignored

    def __str__(self) -> str:
        return self.value


# ============================== Config model ===============================

@dataclass(frozen=True)
class TableMapping:
    source_table: str
    target_table: str
    primary_key: Tuple[str, ...]
    columns: Tuple[str, ...] = ()                  # allow-list; empty = every source column
    column_mappings: Mapping[str, str] = field(default_factory=dict, hash=False)   # source column -> target column
    filter: str | None = None                      # SQL boolean expression ANDed into every fetch
    order_by: str | None = None
    enabled: bool = True
    sync_flag_column: str = DEFAULT_SYNC_FLAG_COLUMN
    mark_synced: bool = True                       # False for read-only sources (views, replicas)

    def __post_init__(self):
        # lists from JSON catalogs become tuples; the rename map is copied
        object.__setattr__(self, "primary_key", tuple(self.primary_key))
        object.__setattr__(self, "columns", tuple(self.columns or ()))
        object.__setattr__(self, "column_mappings", dict(self.column_mappings or {}))

        if not (self.source_table or "").strip():
            raise ConfigurationError("source_table is required")
        if not (self.target_table or "").strip():
            raise ConfigurationError("target_table is required", table=self.source_table)
        if not self.primary_key or any(not (c or "").strip() for c in self.primary_key):
            raise ConfigurationError("primary_key must list at least one column", table=self.source_table)
        if self.mark_synced and not (self.sync_flag_column or "").strip():
            raise ConfigurationError("sync_flag_column is required when mark_synced is enabled", table=self.source_table)

        if self.columns:
            allowed = set(self.columns)
            missing_pk = [c for c in self.primary_key if c not in allowed]
            if missing_pk:
                raise ConfigurationError(
                    f"primary key column(s) {missing_pk} are not in the column allow-list", table=self.source_table
                )
            stray = [c for c in self.column_mappings if c not in allowed]
            if stray:
                raise ConfigurationError(
                    f"column_mappings key(s) {stray} are not in the column allow-list", table=self.source_table
                )

        targets = [self.target_column(c) for c in (self.columns or self.column_mappings.keys())]
        dupes = sorted({t for t in targets if targets.count(t) > 1})
        if dupes:
            raise ConfigurationError(f"several source columns map to target column(s) {dupes}", table=self.source_table)

    # ------------------------ Column helpers ------------------------

    def target_column(self, source_column: str) -> str:
        return self.column_mappings.get(source_column, source_column)

    @property
    def target_primary_key(self) -> Tuple[str, ...]:
        return tuple(self.target_column(c) for c in self.primary_key)

    def check_projection(self, source_columns: Iterable[str]) -> None:
        """Reject a column list in which two source columns land on the same target column."""
        owners: Dict[str, List[str]] = {}
        for c in source_columns:
            owners.setdefault(self.target_column(c).lower(), []).append(c)
        clashes = {t: cols for t, cols in owners.items() if len(cols) > 1}
        if clashes:
            raise ConfigurationError(
                "source columns collide on target column(s): "
                + ", ".join(f"{t} <- {cols}" for t, cols in sorted(clashes.items())),
                table=self.source_table,
            )

    def project(self, row) -> Dict[str, object]:
        """Source row -> target column dict (allow-list already applied at fetch time)."""
        return {self.target_column(c): v for c, v in row.values.items()}

    def describe(self) -> str:
        return f"{self.source_table} -> {self.target_table}"


def mapping_from_dict(raw: Mapping[str, object], **defaults) -> TableMapping:
    """
    Build a mapping from a catalog/JSON entry. Accepts both the long field names and the
    compact ones (source/target/pk/mappings). Unknown keys are rejected.
    """
    aliases = {"source": "source_table", "target": "target_table", "pk": "primary_key", "mappings": "column_mappings"}
    known = {f for f in TableMapping.__dataclass_fields__}
    data: Dict[str, object] = dict(defaults)
    for key, value in raw.items():
        name = aliases.get(key, key)
        if name not in known:
            raise ConfigurationError(f"unknown table mapping key {key!r}", table=str(raw.get("source") or raw.get("source_table") or ""))
        data[name] = value

    if "source_table" not in data:
        raise ConfigurationError("source_table is required")
    data.setdefault("target_table", data["source_table"])
    pk = data.get("primary_key")
    if isinstance(pk, str):
        # comma-separated, as in the older catalogs
        data["primary_key"] = [c.strip() for c in pk.split(",") if c.strip()]
    for flag in ("enabled", "mark_synced"):
        if flag in data:
            data[flag] = parse_bool(data[flag], flag, True)
    return TableMapping(**data)


def validate_mappings(mappings: Iterable[TableMapping]) -> List[TableMapping]:
    """
    Whole-run validation. Individual mappings validate themselves on construction;
    here we reject ambiguous destinations across enabled mappings.
    """
    result = list(mappings)
    seen: Dict[str, str] = {}
    for m in result:
        if not isinstance(m, TableMapping):
            raise ConfigurationError(f"expected TableMapping, got {type(m).__name__}")
        if not m.enabled:
            continue
        key = m.target_table.strip().lower()
        if key in seen:
            raise ConfigurationError(
                f"target table '{m.target_table}' is declared by both '{seen[key]}' and '{m.source_table}'"
            )
        seen[key] = m.source_table
    return result
