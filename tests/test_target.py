from datetime import date, datetime

import pytest

from conftest import NO_WAIT, CountingTarget
from pg_to_duckdb_sync.TableMapping import TableMapping
from pg_to_duckdb_sync.errors import PartialWriteError, SchemaError
from pg_to_duckdb_sync.settings import TargetSettings
from pg_to_duckdb_sync.target import build_create_table_sql, build_upsert_sql, dedupe_last
from pg_to_duckdb_sync.values import ColumnType, Row, infer_column_types

EVENTS = TableMapping("public.events", "events", ("id",))
COLS = ["id", "kind", "at", "ok"]


def _rows(*raw):
    return [Row.from_text(COLS, r, ("id",)) for r in raw]


def _types(mapping, rows):
    return infer_column_types([mapping.project(r) for r in rows])


def test_sql_builders():
    types = {"id": ColumnType.INTEGER, "kind": ColumnType.TEXT, "at": ColumnType.TIMESTAMP}
    assert build_create_table_sql('"main"."events"', types, ["id"]) == (
        'CREATE TABLE IF NOT EXISTS "main"."events" '
        '("id" BIGINT, "kind" VARCHAR, "at" TIMESTAMP, PRIMARY KEY ("id"))'
    )
    assert build_upsert_sql('"main"."events"', ["id", "kind"]) == (
        'INSERT OR REPLACE INTO "main"."events" ("id", "kind") VALUES (?, ?)'
    )


def test_dedupe_keeps_last_occurrence():
    rows = _rows(["1", "a", None, "t"], ["2", "b", None, "t"], ["1", "c", None, "f"])
    assert [r.values["kind"].text for r in dedupe_last(rows)] == ["b", "c"]


def test_ensure_schema_creates_once_and_never_alters(target, duck):
    rows = _rows(["1", "click", "2024-05-01 10:00:00", "true"])
    assert target.ensure_schema(duck, EVENTS, _types(EVENTS, rows)) is True
    assert target.table_exists(duck, EVENTS)

    # different inferred types on a later run leave the table alone
    assert target.ensure_schema(duck, EVENTS, {"id": ColumnType.TEXT, "extra": ColumnType.TEXT}) is False
    cols = duck.execute(
        "SELECT column_name, data_type FROM information_schema.columns "
        "WHERE table_name = 'events' ORDER BY ordinal_position"
    ).fetchall()
    assert cols == [("id", "BIGINT"), ("kind", "VARCHAR"), ("at", "TIMESTAMP"), ("ok", "BOOLEAN")]


def test_ensure_schema_requires_primary_key_column(target, duck):
    with pytest.raises(SchemaError):
        target.ensure_schema(duck, EVENTS, {"kind": ColumnType.TEXT})


def test_upsert_is_idempotent_and_last_write_wins(target, duck):
    first = _rows(["1", "click", "2024-05-01 10:00:00", "true"], ["2", "view", "2024-05-01 11:00:00", "false"])
    types = _types(EVENTS, first)
    target.ensure_schema(duck, EVENTS, types)

    assert target.batch_upsert(duck, EVENTS, first, types, batch_size=10) == 2
    assert target.batch_upsert(duck, EVENTS, first, types, batch_size=10) == 2
    update = _rows(["2", "purchase", "2024-05-02", "true"])
    target.batch_upsert(duck, EVENTS, update, types, batch_size=10)

    assert target.count_rows(duck, EVENTS) == 2
    assert duck.execute('SELECT kind, "at", ok FROM "main"."events" WHERE id = 2').fetchall() == [
        ("purchase", datetime(2024, 5, 2), True)
    ]


def test_chunks_are_separate_transactions(target, duck):
    rows = _rows(*[[str(i), "k", None, None] for i in range(5)])
    types = _types(EVENTS, rows)
    target.ensure_schema(duck, EVENTS, types)

    assert target.batch_upsert(duck, EVENTS, rows, types, batch_size=2) == 5
    assert target.transactions == [2, 2, 1]


def test_failure_after_committed_chunk_is_partial_write(target, duck):
    good = _rows(["1", "a", None, None], ["2", "b", None, None])
    types = _types(EVENTS, good)
    target.ensure_schema(duck, EVENTS, types)
    bad = good + _rows(["x3", "c", None, None])       # id no longer fits BIGINT

    with pytest.raises(PartialWriteError) as exc_info:
        target.batch_upsert(duck, EVENTS, bad, {**types, "id": ColumnType.INTEGER}, batch_size=2)

    assert exc_info.value.rows_written == 2
    assert exc_info.value.code == "PARTIAL_WRITE_ERROR"
    assert target.count_rows(duck, EVENTS) == 2


def test_failure_in_first_chunk_keeps_its_own_error(target, duck):
    rows = _rows(["1", "a", None, "maybe"])
    target.ensure_schema(duck, EVENTS, {"id": ColumnType.INTEGER, "kind": ColumnType.TEXT,
                                        "at": ColumnType.TEXT, "ok": ColumnType.BOOLEAN})
    with pytest.raises(SchemaError) as exc_info:
        target.batch_upsert(duck, EVENTS, rows, {"id": ColumnType.INTEGER, "kind": ColumnType.TEXT,
                                                 "at": ColumnType.TEXT, "ok": ColumnType.BOOLEAN}, batch_size=10)
    assert not isinstance(exc_info.value, PartialWriteError)
    assert target.count_rows(duck, EVENTS) == 0


def test_timestamps_with_offset_are_stored_as_utc(target, duck):
    rows = _rows(["1", "a", "2024-01-01 12:00:00+02", None], ["2", "b", "2024-01-01", None])
    types = _types(EVENTS, rows)
    assert types["at"] is ColumnType.TIMESTAMP
    target.ensure_schema(duck, EVENTS, types)
    target.batch_upsert(duck, EVENTS, rows, types, batch_size=10)

    assert duck.execute('SELECT "at" FROM "main"."events" ORDER BY id').fetchall() == [
        (datetime(2024, 1, 1, 10, 0),), (datetime(2024, 1, 1, 0, 0),)
    ]


def test_connection_creates_target_schema(tmp_path):
    target = CountingTarget(TargetSettings(database=str(tmp_path / "t.duckdb"), schema="raw"), NO_WAIT)
    mapping = TableMapping("public.days", "days", ("d",))
    rows = [Row.from_text(["d"], ["2024-01-31"], ("d",))]
    with target.connection() as conn:
        assert target.ping(conn)
        types = _types(mapping, rows)
        target.ensure_schema(conn, mapping, types)
        target.batch_upsert(conn, mapping, rows, types, batch_size=10)
        assert conn.execute('SELECT d FROM "raw"."days"').fetchall() == [(date(2024, 1, 31),)]


def test_qualified_target_name_overrides_default_schema(target, duck):
    duck.execute('CREATE SCHEMA IF NOT EXISTS "staging"')
    mapping = TableMapping("public.t", "staging.t", ("id",))
    assert target.fq(mapping) == '"staging"."t"'
    rows = [Row.from_text(["id"], ["1"], ("id",))]
    target.ensure_schema(duck, mapping, _types(mapping, rows))
    assert target.table_exists(duck, mapping)


def test_existing_table_types_drive_binding(target, duck):
    rows = _rows(["1", "click", "2024-05-01 10:00:00", "true"])
    target.ensure_schema(duck, EVENTS, _types(EVENTS, rows))
    assert target.existing_column_types(duck, EVENTS) == {
        "id": ColumnType.INTEGER, "kind": ColumnType.TEXT, "at": ColumnType.TIMESTAMP, "ok": ColumnType.BOOLEAN,
    }

    # a later run reads "2024-05-02" as DATE and "42" as INTEGER; the table wins
    later = _rows(["2", "42", "2024-05-02", "false"])
    types = target.conform_column_types(duck, EVENTS, _types(EVENTS, later))
    assert types == {"id": ColumnType.INTEGER, "kind": ColumnType.TEXT, "at": ColumnType.TIMESTAMP, "ok": ColumnType.BOOLEAN}
    target.batch_upsert(duck, EVENTS, later, types, 10)
    assert duck.execute('SELECT kind, at FROM "main"."events" WHERE id = 2').fetchall() == [
        ("42", datetime(2024, 5, 2)),
    ]
    assert target.count_rows(duck, EVENTS) == 1


def test_conform_rejects_columns_missing_from_existing_table(target, duck):
    rows = _rows(["1", "click", None, "true"])
    target.ensure_schema(duck, EVENTS, _types(EVENTS, rows))
    with pytest.raises(SchemaError, match="do not exist"):
        target.conform_column_types(duck, EVENTS, {"id": ColumnType.INTEGER, "referrer": ColumnType.TEXT})
