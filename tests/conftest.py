"""
Shared fixtures: SQLite files stand in for both engines, fake DB-API
drivers stand in for sqlanydb and psycopg2.
"""

import sqlite3
import pytest

from sa2pg.adapters import create_adapter
from sa2pg.config import Settings


CHAIN_SCHEMA = """
CREATE TABLE customer (
    id integer PRIMARY KEY,
    name varchar(40) NOT NULL,
    credit numeric(10,2)
);
CREATE TABLE orders (
    id integer PRIMARY KEY,
    customer_id integer NOT NULL REFERENCES customer(id),
    placed date
);
CREATE TABLE order_line (
    id integer PRIMARY KEY,
    order_id integer NOT NULL REFERENCES orders(id),
    qty smallint,
    note varchar(80)
);
"""

CYCLE_SCHEMA = """
CREATE TABLE dept (
    id integer PRIMARY KEY,
    name varchar(30) NOT NULL,
    head_id integer REFERENCES employee(id)
);
CREATE TABLE employee (
    id integer PRIMARY KEY,
    dept_id integer NOT NULL REFERENCES dept(id),
    manager_id integer REFERENCES employee(id)
);
"""


def build_database(path, script, rows=None):
    """Create a SQLite file from DDL plus {table: [row tuples]}"""
    conn = sqlite3.connect(str(path))
    try:
        conn.executescript(script)
        for table, values in (rows or {}).items():
            if values:
                marks = ", ".join("?" * len(values[0]))
                conn.executemany(f"INSERT INTO {table} VALUES ({marks})", values)
        conn.commit()
    finally:
        conn.close()
    return path


def chain_rows(count=1000):
    customers = [(i, f"customer {i}", None if i % 7 == 0 else i * 1.25) for i in range(1, count + 1)]
    orders = [(i, (i % count) + 1, f"2024-{(i % 12) + 1:02d}-{(i % 28) + 1:02d}") for i in range(1, count + 1)]
    lines = [(i, (i * 3 % count) + 1, i % 50, None if i % 5 else f"note {i}") for i in range(1, count + 1)]
    return {"customer": customers, "orders": orders, "order_line": lines}


def cycle_rows():
    employees = [(1, 1, None), (2, 1, 1), (3, 2, 1), (4, 2, 3)]
    depts = [(1, "sales", 1), (2, "ops", 3)]
    return {"dept": depts, "employee": employees}


def read_all(path, sql):
    conn = sqlite3.connect(str(path))
    try:
        return conn.execute(sql).fetchall()
    finally:
        conn.close()


@pytest.fixture
def make_settings(tmp_path):
    def _make(source_path, target_path, **migration):
        options = {
            "batch_size": 100,
            "workers": 2,
            "max_retries": 2,
            "retry_wait_min": 0,
            "retry_wait_max": 0,
            "ledger_dir": str(tmp_path / "ledger"),
            "artifact_dir": str(tmp_path / "artifacts"),
        }
        options.update(migration)
        return Settings(
            source={"engine": "sqlite", "path": str(source_path), "connect_retries": 1},
            target={"engine": "sqlite", "path": str(target_path), "connect_retries": 1},
            migration=options,
        )
    return _make


@pytest.fixture
def chain_source(tmp_path):
    return build_database(tmp_path / "source.db", CHAIN_SCHEMA, chain_rows())


@pytest.fixture
def cycle_source(tmp_path):
    return build_database(tmp_path / "cycle.db", CYCLE_SCHEMA, cycle_rows())


@pytest.fixture
def connected(make_settings):
    """Open source/target adapters for a pair of SQLite files; closed on teardown"""
    opened = []

    def _connect(source_path, target_path, **migration):
        settings = make_settings(source_path, target_path, **migration)
        source = create_adapter(settings.source).connect()
        target = create_adapter(settings.target).connect()
        opened.extend([source, target])
        return settings, source, target

    yield _connect
    for adapter in opened:
        adapter.disconnect()


# ----------------------------------------------------------------------
# fake DB-API driver
# ----------------------------------------------------------------------

class FakeError(Exception):
    pass


class OperationalError(FakeError):
    pass


class ProgrammingError(FakeError):
    pass


class FakeCursor:
    def __init__(self, driver):
        self.driver = driver
        self.description = None
        self.rowcount = -1
        self._rows = []

    def execute(self, sql, params=None):
        self.driver.executed.append((sql, params))
        outcome = self.driver.respond(sql, params)
        if isinstance(outcome, Exception):
            raise outcome
        columns, rows, rowcount = outcome
        self.description = [(name, None) for name in columns] if columns is not None else None
        self._rows = list(rows)
        self.rowcount = rowcount

    def executemany(self, sql, rows):
        for row in rows:
            self.execute(sql, row)

    def fetchall(self):
        return list(self._rows)

    def close(self):
        pass


class FakeConnection:
    def __init__(self, driver):
        self.driver = driver
        self.closed = False

    def cursor(self):
        return FakeCursor(self.driver)

    def commit(self):
        self.driver.executed.append(("COMMIT", None))

    def rollback(self):
        self.driver.rollbacks += 1

    def close(self):
        self.closed = True


class FakeDriver:
    """Scripted responses keyed by a substring of the statement"""

    def __init__(self):
        self.Error = FakeError
        self.executed = []
        self.connect_kwargs = []
        self.responses = []
        self.connect_error = None
        self.rollbacks = 0

    def on(self, fragment, columns=None, rows=(), rowcount=-1, error=None):
        self.responses.append((fragment, error if error is not None else (columns, rows, rowcount)))
        return self

    def respond(self, sql, params):
        for fragment, outcome in self.responses:
            if fragment in sql:
                return outcome
        if sql.strip() == "SELECT 1":
            return ("?column?",), [(1,)], 1
        return None, [], 0

    def connect(self, **kwargs):
        self.connect_kwargs.append(kwargs)
        if self.connect_error is not None:
            raise self.connect_error
        return FakeConnection(self)


@pytest.fixture
def fake_driver():
    return FakeDriver()

