"""
SQLite adapter for local runs and tests
"""

import re
import sqlite3
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Tuple

import structlog

from ..errors import DiscoveryError, QueryExecutionError
from ..models import ColumnDescriptor, ForeignKeyEdge, TableDescriptor
from ..sqltext import parse_type_text
from .base import CHECKPOINT_TABLE, DatabaseAdapter

logger = structlog.get_logger()

sqlite3.register_adapter(Decimal, str)
sqlite3.register_adapter(datetime, lambda value: value.isoformat(" "))
sqlite3.register_adapter(date, lambda value: value.isoformat())
sqlite3.register_adapter(time, lambda value: value.isoformat())

REBUILD_SUFFIX = "__sa2pg_rebuild"


class SqliteAdapter(DatabaseAdapter):
    """SQLite file database; usable as source or target"""

    engine = "sqlite"
    placeholder = "?"

    def _load_driver(self):
        return sqlite3

    def _open_connection(self):
        return self.driver.connect(
            self.config.path,
            timeout=self.config.connect_timeout,
            isolation_level=None,
            check_same_thread=False,
        )

    def _on_connect(self, conn):
        conn.execute("PRAGMA foreign_keys = ON")

    def _begin(self, conn):
        # Autocommit mode: transactions are opened explicitly
        self._execute(conn, "BEGIN").close()

    def _query_error(self, exc, statement):
        error = super()._query_error(exc, statement)
        message = str(exc).lower()
        error.transient = "locked" in message or "busy" in message
        return error

    def describe_location(self) -> str:
        return self.config.path

    def list_tables(self) -> List[str]:
        _, rows = self.query_rows(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        return [row[0] for row in rows if row[0] != CHECKPOINT_TABLE]

    def describe_table(self, name: str) -> TableDescriptor:
        _, rows = self.query_rows(f"PRAGMA table_info({self.quote_identifier(name)})")
        if not rows:
            raise DiscoveryError(f"Table {name} not found")

        columns, primary_key = [], []
        for cid, column_name, declared, notnull, _default, pk in rows:
            base, width, scale = parse_type_text(declared)
            columns.append(ColumnDescriptor(
                name=column_name,
                source_type=base,
                width=width,
                scale=scale,
                nullable=not notnull and not pk,
                position=cid + 1,
            ))
            if pk:
                primary_key.append((pk, column_name))

        return TableDescriptor(
            name=name,
            owner="main",
            columns=tuple(columns),
            primary_key=tuple(column for _, column in sorted(primary_key)),
            row_count=self.row_count(name),
        )

    def list_foreign_keys(self) -> List[ForeignKeyEdge]:
        edges = []
        for table in self.list_tables():
            _, rows = self.query_rows(f"PRAGMA foreign_key_list({self.quote_identifier(table)})")
            grouped: Dict[int, List[Tuple[int, str, str, Any]]] = {}
            for fk_id, seq, parent, child_col, parent_col, *_ in rows:
                grouped.setdefault(fk_id, []).append((seq, parent, child_col, parent_col))

            for fk_id in sorted(grouped):
                parts = sorted(grouped[fk_id])
                parent = parts[0][1]
                child_columns = tuple(part[2] for part in parts)
                parent_columns = tuple(part[3] for part in parts)
                if any(col is None for col in parent_columns):
                    # REFERENCES parent without a column list points at its primary key
                    parent_columns = self.describe_table(parent).primary_key
                edges.append(ForeignKeyEdge(
                    child_table=table,
                    parent_table=parent,
                    child_columns=child_columns,
                    parent_columns=tuple(parent_columns),
                ))
        return edges

    def add_foreign_key(self, edge: ForeignKeyEdge):
        """SQLite has no ALTER TABLE ADD CONSTRAINT; rebuild the table with the constraint"""
        create_sql = self.scalar(
            "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = ?", (edge.child_table,)
        )
        if create_sql is None:
            raise QueryExecutionError(self.engine, f"no such table: {edge.child_table}")

        closing = create_sql.rstrip().rfind(")")
        rebuild = self.quote_identifier(edge.child_table + REBUILD_SUFFIX)
        statement = re.sub(
            r"^\s*CREATE\s+TABLE\s+(\"(?:[^\"]|\"\")+\"|[^\s(]+)",
            f"CREATE TABLE {rebuild}",
            create_sql[:closing].rstrip() + f",\n    {self.render_foreign_key(edge)}\n)",
            count=1,
            flags=re.I,
        )
        child = self.quote_identifier(edge.child_table)

        with self.connection() as conn:
            conn.execute("PRAGMA foreign_keys = OFF")
            try:
                self._begin(conn)
                for sql in (
                    statement,
                    f"INSERT INTO {rebuild} SELECT * FROM {child}",
                    f"DROP TABLE {child}",
                    f"ALTER TABLE {rebuild} RENAME TO {child}",
                ):
                    self._execute(conn, sql).close()

                violations = self._fetch(self._execute(conn, f"PRAGMA foreign_key_check({child})"))[1]
                if violations:
                    conn.rollback()
                    raise QueryExecutionError(
                        self.engine,
                        f"{len(violations)} rows of {edge.child_table} violate {self.constraint_name(edge)}",
                    )
                conn.commit()
            finally:
                if conn.in_transaction:
                    conn.rollback()
                conn.execute("PRAGMA foreign_keys = ON")

        logger.info("Constraint attached", engine=self.engine, child=edge.child_table, parent=edge.parent_table)
