"""
Schema discovery and drift detection against SQLite sources
"""

import pytest

from sa2pg.adapters import create_adapter
from sa2pg.discovery import SchemaDiscoverer, detect_drift, has_drift
from sa2pg.errors import DiscoveryError, MigrationCancelled
from sa2pg.models import CancelToken, ColumnDescriptor, TableDescriptor
from sa2pg.type_mapper import TypeMapper

from conftest import CHAIN_SCHEMA, build_database


@pytest.fixture
def source(tmp_path, make_settings):
    path = build_database(tmp_path / "source.db", CHAIN_SCHEMA, {"customer": [(1, "a", 1.5), (2, "b", None)]})
    adapter = create_adapter(make_settings(path, tmp_path / "target.db").source).connect()
    yield adapter
    adapter.disconnect()


def test_discover_reads_tables_keys_and_counts(source):
    snapshot = SchemaDiscoverer(source).discover()

    assert [table.name for table in snapshot.tables] == ["customer", "order_line", "orders"]
    customer = snapshot.table("customer")
    assert customer.primary_key == ("id",)
    assert customer.row_count == 2
    assert customer.column("name") == ColumnDescriptor("name", "varchar", 40, None, nullable=False, position=2)
    assert customer.column("credit").width == 10 and customer.column("credit").scale == 2

    edges = {(edge.child_table, edge.parent_table) for edge in snapshot.foreign_keys}
    assert edges == {("orders", "customer"), ("order_line", "orders")}
    assert snapshot.procedures == []


def test_include_and_exclude_lists(source):
    snapshot = SchemaDiscoverer(source, include=["Customer", "orders"], exclude=["orders"]).discover()

    assert [table.name for table in snapshot.tables] == ["customer"]
    # Edges leaving the selection are dropped with their child table
    assert snapshot.foreign_keys == []


def test_unknown_included_table_is_an_error(source):
    with pytest.raises(DiscoveryError, match="not found"):
        SchemaDiscoverer(source, include=["invoice"]).discover()


def test_discovery_stops_when_cancelled(source):
    token = CancelToken()
    token.cancel()
    with pytest.raises(MigrationCancelled):
        SchemaDiscoverer(source, cancel_token=token).discover()


def test_detect_drift_reports_each_kind_of_change():
    mapper = TypeMapper()
    expected = mapper.map_table(TableDescriptor("customer", "DBA", (
        ColumnDescriptor("id", "integer", nullable=False),
        ColumnDescriptor("name", "varchar", 40),
        ColumnDescriptor("credit", "numeric", 10, 2),
    ), primary_key=("id",)))
    actual = TableDescriptor("customer", "public", (
        ColumnDescriptor("id", "integer", nullable=False),
        ColumnDescriptor("name", "varchar", 80),
        ColumnDescriptor("legacy_code", "varchar", 4),
    ))

    drift = detect_drift(expected, actual)

    assert has_drift(drift)
    assert drift == {
        "new_columns": ["credit"],
        "removed_columns": ["legacy_code"],
        "type_changes": ["name: varchar(80) -> varchar(40)"],
    }
    assert not has_drift(detect_drift(expected, TableDescriptor("customer", "public", (
        ColumnDescriptor("ID", "integer"),
        ColumnDescriptor("name", "varchar", 40),
        ColumnDescriptor("credit", "numeric", 10, 2),
    ))))
