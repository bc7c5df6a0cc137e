"""
Type table, overrides and value coercion
"""

from datetime import date, datetime
from decimal import Decimal

import pyarrow as pa
import pytest

from sa2pg.errors import CoercionError, MappingError
from sa2pg.models import ColumnDescriptor, ForeignKeyEdge, TableDescriptor, TypeMappingEntry
from sa2pg.type_mapper import TYPE_TABLE, TypeMapper, arrow_rows, arrow_type_for, coerce_rows, map_edge


def table(name, *columns, primary_key=("ID",)):
    return TableDescriptor(name=name, owner="DBA", columns=tuple(columns), primary_key=primary_key)


@pytest.mark.parametrize("source, width, scale, expected", [
    ("integer", None, None, "integer"),
    ("int", None, None, "integer"),
    ("bigint", None, None, "bigint"),
    ("char", 10, None, "varchar(10)"),
    ("varchar", 255, None, "varchar(255)"),
    ("long varchar", None, None, "text"),
    ("numeric", 12, 3, "numeric(12,3)"),
    ("decimal", 30, 0, "numeric(30,0)"),
    ("money", None, None, "numeric(19,4)"),
    ("bit", None, None, "boolean"),
    ("datetime", None, None, "timestamp"),
    ("float", 20, None, "real"),
    ("float", 53, None, "double precision"),
    ("uniqueidentifier", None, None, "uuid"),
    ("long binary", None, None, "bytea"),
])
def test_fixed_mapping_table(source, width, scale, expected):
    target, _ = TypeMapper().map_type(source, width, scale)
    assert target == expected


@pytest.mark.parametrize("source", ["tinyint", "unsigned int", "float", "st_geometry", "rowversion"])
def test_ambiguous_or_unknown_types_are_rejected(source):
    with pytest.raises(MappingError, match="not mapped"):
        TypeMapper().map_type(source, subject="t.c")


def test_override_resolves_ambiguous_type():
    mapper = TypeMapper({"tinyint": "smallint"})
    assert mapper.map_type("tinyint") == ("smallint", pa.int16())


def test_override_naming_unknown_target_fails_fast():
    with pytest.raises(MappingError):
        TypeMapper({"tinyint": "hstore"})


def test_width_sensitive_entries_never_widen():
    for entry in TYPE_TABLE:
        if entry.width_sensitive:
            assert entry.target_bytes <= entry.source_bytes

    widening = TYPE_TABLE + (TypeMappingEntry("smallint", "integer", source_bytes=2, target_bytes=4),)
    with pytest.raises(MappingError, match="widens"):
        TypeMapper(table=widening)


def test_arrow_types_follow_precision():
    assert arrow_type_for("numeric(10,2)") == pa.decimal128(10, 2)
    assert arrow_type_for("numeric(60,4)") == pa.decimal256(60, 4)
    assert arrow_type_for("numeric") == pa.string()
    assert arrow_type_for("numeric(76,0)") == pa.decimal256(76, 0)
    with pytest.raises(MappingError, match="exceeds 76"):
        arrow_type_for("numeric(90,0)")


def test_map_table_normalizes_identifiers():
    mapped = TypeMapper().map_table(table(
        "Customer",
        ColumnDescriptor("ID", "integer", nullable=False),
        ColumnDescriptor("Name", "varchar", width=40),
    ))

    assert mapped.target_name == "customer"
    assert mapped.target_columns == ["id", "name"]
    assert mapped.primary_key == ("id",)
    assert mapped.source_columns == ["ID", "Name"]


def test_columns_colliding_after_normalization_are_rejected():
    with pytest.raises(MappingError, match="collide"):
        TypeMapper().map_table(table(
            "T",
            ColumnDescriptor("ID", "integer"),
            ColumnDescriptor("id", "integer"),
        ))


def test_map_edge_uses_target_identifiers():
    mapper = TypeMapper()
    parent = mapper.map_table(table("Parent", ColumnDescriptor("ID", "integer")))
    child = mapper.map_table(table("Child", ColumnDescriptor("ID", "integer"), ColumnDescriptor("ParentID", "integer")))
    edge = ForeignKeyEdge("Child", "Parent", ("ParentID",), ("ID",), name="FK_Parent")

    mapped = map_edge(edge, {"Parent": parent, "Child": child})

    assert mapped == ForeignKeyEdge("child", "parent", ("parentid",), ("id",), name="FK_Parent")


def mapped_sample():
    return TypeMapper().map_table(table(
        "sample",
        ColumnDescriptor("id", "integer", nullable=False),
        ColumnDescriptor("amount", "numeric", width=10, scale=2),
        ColumnDescriptor("flag", "bit"),
        ColumnDescriptor("created", "timestamp"),
        ColumnDescriptor("day", "date"),
        primary_key=("id",),
    ))


def test_coerce_rows_normalizes_driver_values():
    rows = [
        (1, 12.5, 1, "2024-03-01 10:15:00", "2024-03-01"),
        ("2", Decimal("3.10"), "0", datetime(2024, 3, 2), datetime(2024, 3, 2)),
        (3, None, None, None, None),
    ]

    data = coerce_rows(mapped_sample(), rows)

    assert data.num_rows == 3
    assert arrow_rows(data) == [
        (1, Decimal("12.50"), True, datetime(2024, 3, 1, 10, 15), date(2024, 3, 1)),
        (2, Decimal("3.10"), False, datetime(2024, 3, 2), date(2024, 3, 2)),
        (3, None, None, None, None),
    ]


@pytest.mark.parametrize("row, column", [
    ((None, 1, 1, None, None), "id"),
    ((1, Decimal("1.234"), 1, None, None), "amount"),
    ((1, 1, 2, None, None), "flag"),
    ((1, 1, 1, None, datetime(2024, 1, 1, 8, 30)), "day"),
    ((1.5, 1, 1, None, None), "id"),
])
def test_lossy_values_raise_coercion_error(row, column):
    with pytest.raises(CoercionError) as excinfo:
        coerce_rows(mapped_sample(), [row])
    assert excinfo.value.column == column
