"""
Batched movement: checkpoints, retries, resume and cancellation
"""

import pytest

from sa2pg.discovery import SchemaDiscoverer
from sa2pg.errors import MigrationCancelled, MovementError, QueryExecutionError
from sa2pg.models import CancelToken
from sa2pg.mover import DataMover
from sa2pg.type_mapper import TypeMapper

from conftest import build_database, read_all


def prepare(source, target):
    snapshot = SchemaDiscoverer(source).discover()
    mapper = TypeMapper(normalize_identifier=target.normalize_identifier)
    tables = {table.name: mapper.map_table(table) for table in snapshot.tables}
    target.ensure_checkpoint_table()
    for table in tables.values():
        target.create_table(table)
    return tables


def mover(source, target, **kwargs):
    options = {"batch_size": 100, "max_retries": 2, "retry_wait_min": 0, "retry_wait_max": 0}
    options.update(kwargs)
    return DataMover(source, target, **options)


def test_move_table_commits_every_batch(chain_source, tmp_path, connected):
    _, source, target = connected(chain_source, tmp_path / "target.db")
    tables = prepare(source, target)

    result = mover(source, target).move_table(tables["customer"])

    assert result.success
    assert (result.source_rows, result.rows_committed, result.batches_committed) == (1000, 1000, 10)
    assert result.resumed_from == 0
    assert target.read_checkpoint("customer") == (1000, 10)
    assert read_all(tmp_path / "target.db", "SELECT id, name FROM customer ORDER BY id LIMIT 2") == [
        (1, "customer 1"), (2, "customer 2"),
    ]


def test_failed_batch_halts_table_and_resume_continues(chain_source, tmp_path, connected, monkeypatch):
    _, source, target = connected(chain_source, tmp_path / "target.db")
    tables = prepare(source, target)
    original = target.write_batch
    attempts = []

    def failing(table, columns, rows, rows_committed, batches_committed):
        attempts.append(rows_committed)
        if rows_committed > 300:
            raise QueryExecutionError("sqlite", "database is locked", transient=True)
        return original(table, columns, rows, rows_committed, batches_committed)

    monkeypatch.setattr(target, "write_batch", failing)
    with pytest.raises(MovementError) as excinfo:
        mover(source, target).move_table(tables["orders"])

    assert excinfo.value.rows_committed == 300
    assert attempts == [100, 200, 300, 400, 400]
    assert target.read_checkpoint("orders") == (300, 3)
    assert target.row_count("orders") == 300

    monkeypatch.undo()
    result = mover(source, target).move_table(tables["orders"])

    assert result.resumed_from == 300
    assert (result.rows_committed, result.batches_committed) == (1000, 10)
    assert read_all(tmp_path / "target.db", "SELECT COUNT(DISTINCT id) FROM orders") == [(1000,)]


def test_transient_failure_is_retried(chain_source, tmp_path, connected, monkeypatch):
    _, source, target = connected(chain_source, tmp_path / "target.db")
    tables = prepare(source, target)
    original = target.write_batch
    failures = []

    def flaky(table, columns, rows, rows_committed, batches_committed):
        if rows_committed == 200 and not failures:
            failures.append(rows_committed)
            raise QueryExecutionError("sqlite", "database is locked", transient=True)
        return original(table, columns, rows, rows_committed, batches_committed)

    monkeypatch.setattr(target, "write_batch", flaky)
    result = mover(source, target).move_table(tables["customer"])

    assert failures == [200]
    assert result.rows_committed == 1000
    assert target.row_count("customer") == 1000


def test_permanent_failure_is_not_retried(chain_source, tmp_path, connected, monkeypatch):
    _, source, target = connected(chain_source, tmp_path / "target.db")
    tables = prepare(source, target)
    original = target.write_batch
    attempts = []

    def duplicate_key(table, columns, rows, rows_committed, batches_committed):
        attempts.append(rows_committed)
        if rows_committed == 200:
            raise QueryExecutionError("postgresql", "duplicate key value violates unique constraint")
        return original(table, columns, rows, rows_committed, batches_committed)

    monkeypatch.setattr(target, "write_batch", duplicate_key)
    with pytest.raises(MovementError, match="after 1 attempt") as excinfo:
        mover(source, target, max_retries=4).move_table(tables["customer"])

    assert attempts == [100, 200]
    assert excinfo.value.rows_committed == 100
    assert target.read_checkpoint("customer") == (100, 1)


def test_cancellation_keeps_committed_batches(chain_source, tmp_path, connected, monkeypatch):
    _, source, target = connected(chain_source, tmp_path / "target.db")
    tables = prepare(source, target)
    token = CancelToken()
    original = target.write_batch

    def cancel_after_second(table, columns, rows, rows_committed, batches_committed):
        original(table, columns, rows, rows_committed, batches_committed)
        if batches_committed == 2:
            token.cancel()

    monkeypatch.setattr(target, "write_batch", cancel_after_second)
    with pytest.raises(MigrationCancelled):
        mover(source, target, cancel_token=token).move_table(tables["order_line"])

    assert target.read_checkpoint("order_line") == (200, 2)
    assert target.row_count("order_line") == 200


def test_rows_without_checkpoint_are_inconsistent(chain_source, tmp_path, connected):
    _, source, target = connected(chain_source, tmp_path / "target.db")
    tables = prepare(source, target)
    target.execute("INSERT INTO customer (id, name) VALUES (1, 'stray')")

    with pytest.raises(MovementError, match="checkpoint records 0"):
        mover(source, target).move_table(tables["customer"])


def test_value_that_does_not_fit_halts_table(tmp_path, connected):
    path = build_database(tmp_path / "bad.db", "CREATE TABLE stock (id integer PRIMARY KEY, qty smallint);",
                          {"stock": [(1, 5), (2, "lots")]})
    _, source, target = connected(path, tmp_path / "target.db")
    tables = prepare(source, target)

    with pytest.raises(MovementError, match="qty"):
        mover(source, target).move_table(tables["stock"])
    assert target.row_count("stock") == 0


def test_move_tables_runs_concurrently_and_reports_failures(chain_source, tmp_path, connected, monkeypatch):
    _, source, target = connected(chain_source, tmp_path / "target.db")
    tables = prepare(source, target)
    original = target.write_batch

    def refuse_orders(table, columns, rows, rows_committed, batches_committed):
        if table == "orders":
            raise QueryExecutionError("sqlite", "constraint failed")
        return original(table, columns, rows, rows_committed, batches_committed)

    monkeypatch.setattr(target, "write_batch", refuse_orders)
    results = mover(source, target).move_tables(list(tables.values()), workers=3)

    assert set(results) == {"customer", "orders", "order_line"}
    assert results["customer"].success and results["order_line"].success
    assert not results["orders"].success
    assert "constraint failed" in results["orders"].error_message
    assert target.row_count("order_line") == 1000
