import math
from datetime import date, datetime

import pytest

from pg_to_duckdb_sync.errors import SchemaError
from pg_to_duckdb_sync.values import (
    ColumnType,
    Row,
    Scalar,
    classify_text,
    column_type_from_duckdb,
    infer_column_types,
    unify,
)


@pytest.mark.parametrize("text, kind, value", [
    (None, ColumnType.NULL, None),
    ("t", ColumnType.BOOLEAN, True),
    ("false", ColumnType.BOOLEAN, False),
    ("42", ColumnType.INTEGER, 42),
    ("-7", ColumnType.INTEGER, -7),
    ("0", ColumnType.INTEGER, 0),
    ("007", ColumnType.TEXT, "007"),
    ("99999999999999999999", ColumnType.TEXT, "99999999999999999999"),
    ("3.14", ColumnType.FLOAT, 3.14),
    ("1e3", ColumnType.FLOAT, 1000.0),
    ("2024-02-29", ColumnType.DATE, date(2024, 2, 29)),
    ("2023-02-30", ColumnType.TEXT, "2023-02-30"),
    ("2024-05-01 10:20:30.123456789", ColumnType.TIMESTAMP, datetime(2024, 5, 1, 10, 20, 30, 123456)),
    ("2024-05-01T10:20:30Z", ColumnType.TIMESTAMP, datetime(2024, 5, 1, 10, 20, 30)),
    ("2024-05-01 10:20:30+0530", ColumnType.TIMESTAMP, datetime(2024, 5, 1, 4, 50, 30)),
    ("hello", ColumnType.TEXT, "hello"),
    ("", ColumnType.TEXT, ""),
    ("NaN-ish", ColumnType.TEXT, "NaN-ish"),
    ("Infinity", ColumnType.FLOAT, float("inf")),
    ("-Infinity", ColumnType.FLOAT, float("-inf")),
    ("infinity", ColumnType.FLOAT, float("inf")),
])
def test_classify_text(text, kind, value):
    assert classify_text(text) == (kind, value)


def test_unify():
    assert unify([ColumnType.INTEGER, ColumnType.NULL, ColumnType.INTEGER]) is ColumnType.INTEGER
    assert unify([ColumnType.INTEGER, ColumnType.FLOAT]) is ColumnType.FLOAT
    assert unify([ColumnType.DATE, ColumnType.TIMESTAMP]) is ColumnType.TIMESTAMP
    assert unify([ColumnType.BOOLEAN, ColumnType.INTEGER]) is ColumnType.TEXT
    assert unify([ColumnType.NULL, ColumnType.NULL]) is ColumnType.TEXT
    assert unify([]) is ColumnType.TEXT


def test_as_type_conversions():
    assert Scalar.from_text("5").as_type(ColumnType.FLOAT) == 5.0
    assert Scalar.from_text("5").as_type(ColumnType.TEXT) == "5"
    assert Scalar.from_text("2024-01-01").as_type(ColumnType.TIMESTAMP) == datetime(2024, 1, 1)
    assert Scalar.from_text(None).as_type(ColumnType.INTEGER) is None
    with pytest.raises(SchemaError):
        Scalar.from_text("abc").as_type(ColumnType.INTEGER)
    with pytest.raises(SchemaError):
        Scalar.from_text("1.5").as_type(ColumnType.INTEGER)


def test_row_keeps_primary_key_text():
    row = Row.from_text(["a", "b", "c"], ["01", "2", None], ("a", "b"))
    assert row.key == ("01", "2")
    assert row.values["a"].kind is ColumnType.TEXT
    assert row.values["c"].kind is ColumnType.NULL


def test_row_rejects_null_primary_key():
    with pytest.raises(ValueError):
        Row.from_text(["id"], [None], ("id",))


def test_infer_column_types_follows_first_row_order():
    rows = [
        {"id": Scalar.from_text("1"), "price": Scalar.from_text("2"), "note": Scalar.from_text(None)},
        {"id": Scalar.from_text("2"), "price": Scalar.from_text("2.5"), "note": Scalar.from_text(None)},
    ]
    types = infer_column_types(rows)
    assert list(types) == ["id", "price", "note"]
    assert types == {"id": ColumnType.INTEGER, "price": ColumnType.FLOAT, "note": ColumnType.TEXT}
    assert types["note"].duckdb_type == "VARCHAR"
    assert infer_column_types([]) == {}


def test_nan_text_is_a_float():
    kind, value = classify_text("NaN")
    assert kind is ColumnType.FLOAT
    assert math.isnan(value)
    assert classify_text("nan")[0] is ColumnType.FLOAT


@pytest.mark.parametrize("data_type, kind", [
    ("BIGINT", ColumnType.INTEGER),
    ("INTEGER", ColumnType.INTEGER),
    ("UBIGINT", ColumnType.INTEGER),
    ("DOUBLE", ColumnType.FLOAT),
    ("DECIMAL(18,3)", ColumnType.FLOAT),
    ("BOOLEAN", ColumnType.BOOLEAN),
    ("TIMESTAMP", ColumnType.TIMESTAMP),
    ("TIMESTAMP WITH TIME ZONE", ColumnType.TIMESTAMP),
    ("DATE", ColumnType.DATE),
    ("VARCHAR", ColumnType.TEXT),
    ("UUID", ColumnType.TEXT),
])
def test_column_type_from_duckdb(data_type, kind):
    assert column_type_from_duckdb(data_type) is kind
