from __future__ import annotations

import logging
from typing import Iterable, Tuple

LOG = logging.getLogger(__name__)

# Identifier helpers shared by the PostgreSQL and DuckDB clients; both quote with "...".


def qi(ident: str) -> str:
    q = '"' + ident.replace('"', '""') + '"'
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Quoted identifier: raw=%r quoted=%r", ident, q)
    return q


def split_table(name: str, default_schema: str | None = None) -> Tuple[str | None, str]:
    """'schema.table' -> ('schema', 'table'); 'table' -> (default_schema, 'table')."""
    schema, dot, table = name.strip().rpartition(".")
    if not dot:
        return default_schema, table
    return schema, table


def fq_table(name: str, default_schema: str | None = None) -> str:
    schema, table = split_table(name, default_schema)
    fq = f"{qi(schema)}.{qi(table)}" if schema else qi(table)
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("FQ table: %s", fq)
    return fq


def column_list(columns: Iterable[str]) -> str:
    return ", ".join(qi(c) for c in columns)
