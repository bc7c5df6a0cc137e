"""
Engine-neutral database adapter

Every component talks to SQL Anywhere, PostgreSQL or SQLite through this
interface. Variants only supply catalog queries, dialect details and
driver handling.
"""

import hashlib
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.exc import TimeoutError as PoolTimeout
from sqlalchemy.pool import QueuePool
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import AdapterConnectionError, QueryExecutionError, UnsupportedOperationError
from ..models import (
    ForeignKeyEdge,
    MappedTable,
    ProcedureDescriptor,
    ProcedureResult,
    TableDescriptor,
    TranslatedProcedure,
)

logger = structlog.get_logger()

CHECKPOINT_TABLE = "sa2pg_checkpoint"

TRANSIENT_ERRORS = {
    "OperationalError",
    "InterfaceError",
    "TransactionRollbackError",
    "SerializationFailure",
    "DeadlockDetected",
}

# PostgreSQL truncates identifiers longer than this
MAX_IDENTIFIER_LENGTH = 63


class DatabaseAdapter(ABC):
    """Connection lifecycle, catalog access, batch I/O and procedure calls for one engine"""

    engine = "generic"
    placeholder = "?"
    supports_procedures = False

    def __init__(self, config, driver: Any = None):
        self.config = config
        self._driver = driver
        self._pool: Optional[QueuePool] = None

    # ------------------------------------------------------------------
    # connection lifecycle
    # ------------------------------------------------------------------

    @property
    def driver(self) -> Any:
        if self._driver is None:
            self._driver = self._load_driver()
        return self._driver

    @abstractmethod
    def _load_driver(self) -> Any:
        """Import the DB-API module for this engine"""

    @abstractmethod
    def _open_connection(self) -> Any:
        """Open one raw driver connection"""

    def _on_connect(self, conn):
        """Session setup run once per new connection"""

    def _new_connection(self):
        try:
            conn = self._open_connection()
            self._on_connect(conn)
            return conn
        except self.driver.Error as e:
            raise AdapterConnectionError(self.engine, str(e).strip()) from e

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    def connect(self) -> "DatabaseAdapter":
        """Open the pool and prove the engine is reachable"""
        if self._pool is not None:
            return self

        retrying = Retrying(
            stop=stop_after_attempt(self.config.connect_retries),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(AdapterConnectionError),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                pool = self._create_pool()
                try:
                    conn = pool.connect()
                    try:
                        self._ping(conn)
                    finally:
                        conn.close()
                except AdapterConnectionError as e:
                    pool.dispose()
                    logger.warning("Connection attempt failed", engine=self.engine,
                                   attempt=attempt.retry_state.attempt_number, error=str(e))
                    raise
                self._pool = pool

        logger.info("Connected", engine=self.engine, target=self.describe_location())
        return self

    def _create_pool(self) -> QueuePool:
        """Fixed-size pool; connections are rolled back when checked in"""
        return QueuePool(
            self._new_connection,
            pool_size=self.config.pool_size,
            max_overflow=0,
            timeout=self.config.connect_timeout,
            reset_on_return="rollback",
        )

    def _ping(self, conn):
        cursor = conn.cursor()
        try:
            cursor.execute("SELECT 1")
            cursor.fetchall()
        except self.driver.Error as e:
            raise AdapterConnectionError(self.engine, str(e).strip()) from e
        finally:
            cursor.close()
        conn.rollback()

    def disconnect(self):
        if self._pool is not None:
            self._pool.dispose()
            self._pool = None
            logger.info("Disconnected", engine=self.engine)

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc, tb):
        self.disconnect()

    def describe_location(self) -> str:
        return getattr(self.config, "host", None) or getattr(self.config, "path", None) or self.engine

    @contextmanager
    def connection(self) -> Iterator[Any]:
        """Check out a connection; it is rolled back before returning to the pool"""
        if self._pool is None:
            raise AdapterConnectionError(self.engine, "adapter is not connected")
        try:
            conn = self._pool.connect()
        except PoolTimeout as e:
            raise AdapterConnectionError(
                self.engine, f"no connection free after {self.config.connect_timeout}s"
            ) from e

        broken = False
        try:
            yield conn
        except QueryExecutionError as e:
            broken = e.transient
            raise
        finally:
            if broken:
                # Transient failures may leave the session unusable
                conn.invalidate()
            else:
                conn.close()

    def _begin(self, conn):
        """DB-API drivers open transactions implicitly"""

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        """Run the block in one transaction, committed only if it completes"""
        with self.connection() as conn:
            self._begin(conn)
            yield conn
            try:
                conn.commit()
            except self.driver.Error as e:
                raise self._query_error(e, "COMMIT") from e

    # ------------------------------------------------------------------
    # statement execution
    # ------------------------------------------------------------------

    def _query_error(self, exc: Exception, statement: Optional[str]) -> QueryExecutionError:
        names = {cls.__name__ for cls in type(exc).__mro__}
        return QueryExecutionError(
            self.engine,
            str(exc).strip(),
            transient=bool(names & TRANSIENT_ERRORS),
            statement=statement,
        )

    def _execute(self, conn, sql: str, params: Sequence[Any] = ()):
        cursor = conn.cursor()
        try:
            if params:
                cursor.execute(sql, tuple(params))
            else:
                cursor.execute(sql)
        except self.driver.Error as e:
            cursor.close()
            raise self._query_error(e, sql) from e
        return cursor

    def _executemany(self, conn, sql: str, rows: Sequence[Sequence[Any]]):
        cursor = conn.cursor()
        try:
            cursor.executemany(sql, rows)
        except self.driver.Error as e:
            raise self._query_error(e, sql) from e
        finally:
            cursor.close()

    def _fetch(self, cursor) -> Tuple[Tuple[str, ...], List[Tuple[Any, ...]]]:
        try:
            if cursor.description is None:
                return (), []
            columns = tuple(self.normalize_column_name(d[0]) for d in cursor.description)
            return columns, [tuple(row) for row in cursor.fetchall()]
        except self.driver.Error as e:
            raise self._query_error(e, None) from e
        finally:
            cursor.close()

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        columns, rows = self.query_rows(sql, params)
        return [dict(zip(columns, row)) for row in rows]

    def query_rows(self, sql: str, params: Sequence[Any] = ()) -> Tuple[Tuple[str, ...], List[Tuple[Any, ...]]]:
        with self.connection() as conn:
            return self._fetch(self._execute(conn, sql, params))

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        _, rows = self.query_rows(sql, params)
        return rows[0][0] if rows else None

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        with self.transaction() as conn:
            cursor = self._execute(conn, sql, params)
            rowcount = cursor.rowcount
            cursor.close()
            return rowcount

    # ------------------------------------------------------------------
    # identifiers
    # ------------------------------------------------------------------

    def normalize_column_name(self, name: str) -> str:
        """Result-set column names are reported in lower case on every engine"""
        return name.lower()

    def normalize_identifier(self, name: str) -> str:
        """Identifier this engine uses for an object migrated under `name`"""
        return name.lower()

    def quote_identifier(self, name: str) -> str:
        return '"' + name.replace('"', '""') + '"'

    @property
    def schema(self) -> Optional[str]:
        return None

    def qualify(self, table: str) -> str:
        if self.schema:
            return f"{self.quote_identifier(self.schema)}.{self.quote_identifier(table)}"
        return self.quote_identifier(table)

    def column_list(self, columns: Sequence[str]) -> str:
        return ", ".join(self.quote_identifier(col) for col in columns)

    def constraint_name(self, edge: ForeignKeyEdge) -> str:
        name = edge.name or f"fk_{edge.child_table}_{edge.parent_table}_{'_'.join(edge.child_columns)}"
        name = self.normalize_identifier(name)
        if len(name) > MAX_IDENTIFIER_LENGTH:
            digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
            name = f"{name[:MAX_IDENTIFIER_LENGTH - 9]}_{digest}"
        return name

    # ------------------------------------------------------------------
    # catalog
    # ------------------------------------------------------------------

    @abstractmethod
    def list_tables(self) -> List[str]:
        """User tables in scope, excluding the checkpoint table"""

    @abstractmethod
    def describe_table(self, name: str) -> TableDescriptor:
        """Columns, primary key and row count of one table"""

    @abstractmethod
    def list_foreign_keys(self) -> List[ForeignKeyEdge]:
        """Every foreign key between tables in scope"""

    def list_procedures(self) -> List[ProcedureDescriptor]:
        return []

    def table_exists(self, name: str) -> bool:
        wanted = name.lower()
        return any(table.lower() == wanted for table in self.list_tables())

    # ------------------------------------------------------------------
    # data access
    # ------------------------------------------------------------------

    def row_count(self, table: str) -> int:
        return int(self.scalar(f"SELECT COUNT(*) FROM {self.qualify(table)}"))

    def _paginate(self, select_list: str, table: str, order: str, offset: int, limit: int) -> str:
        return f"SELECT {select_list} FROM {table} ORDER BY {order} LIMIT {int(limit)} OFFSET {int(offset)}"

    def fetch_rows(
        self,
        table: str,
        columns: Sequence[str],
        order_by: Sequence[str],
        offset: int,
        limit: int,
        descending: bool = False,
    ) -> List[Tuple[Any, ...]]:
        """One page of rows in a stable order"""
        direction = " DESC" if descending else ""
        order = ", ".join(f"{self.quote_identifier(col)}{direction}" for col in order_by)
        sql = self._paginate(self.column_list(columns), self.qualify(table), order, offset, limit)
        _, rows = self.query_rows(sql)
        return rows

    def fetch_by_keys(
        self,
        table: str,
        columns: Sequence[str],
        key_columns: Sequence[str],
        keys: Sequence[Sequence[Any]],
    ) -> List[Tuple[Any, ...]]:
        """Rows whose key columns equal one of the given key tuples, in no particular order"""
        if not keys:
            return []

        conditions, params = [], []
        for key in keys:
            parts = []
            for col, value in zip(key_columns, key):
                if value is None:
                    parts.append(f"{self.quote_identifier(col)} IS NULL")
                else:
                    parts.append(f"{self.quote_identifier(col)} = {self.placeholder}")
                    params.append(value)
            conditions.append("(" + " AND ".join(parts) + ")")

        sql = f"SELECT {self.column_list(columns)} FROM {self.qualify(table)} WHERE {' OR '.join(conditions)}"
        _, rows = self.query_rows(sql, params)
        return rows

    def insert_statement(self, table: str, columns: Sequence[str]) -> str:
        placeholders = ", ".join([self.placeholder] * len(columns))
        return f"INSERT INTO {self.qualify(table)} ({self.column_list(columns)}) VALUES ({placeholders})"

    def _insert_rows(self, conn, table: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]):
        self._executemany(conn, self.insert_statement(table, columns), rows)

    def write_batch(
        self,
        table: str,
        columns: Sequence[str],
        rows: Sequence[Sequence[Any]],
        rows_committed: int,
        batches_committed: int,
    ):
        """Insert rows and advance the table's checkpoint in a single transaction"""
        with self.transaction() as conn:
            if rows:
                self._insert_rows(conn, table, columns, rows)
            cursor = self._execute(
                conn,
                self._checkpoint_upsert_sql(),
                (table, rows_committed, batches_committed, datetime.now().isoformat()),
            )
            cursor.close()

    # ------------------------------------------------------------------
    # checkpoints
    # ------------------------------------------------------------------

    def ensure_checkpoint_table(self):
        self.execute(
            f"CREATE TABLE IF NOT EXISTS {self.qualify(CHECKPOINT_TABLE)} ("
            f"table_name varchar(255) NOT NULL PRIMARY KEY, "
            f"rows_committed bigint NOT NULL, "
            f"batches_committed integer NOT NULL, "
            f"updated_at varchar(64) NOT NULL)"
        )

    def _checkpoint_upsert_sql(self) -> str:
        p = self.placeholder
        return (
            f"INSERT INTO {self.qualify(CHECKPOINT_TABLE)} "
            f"(table_name, rows_committed, batches_committed, updated_at) VALUES ({p}, {p}, {p}, {p}) "
            f"ON CONFLICT (table_name) DO UPDATE SET rows_committed = excluded.rows_committed, "
            f"batches_committed = excluded.batches_committed, updated_at = excluded.updated_at"
        )

    def read_checkpoint(self, table: str) -> Optional[Tuple[int, int]]:
        """(rows_committed, batches_committed) for a table, or None before its first batch"""
        _, rows = self.query_rows(
            f"SELECT rows_committed, batches_committed FROM {self.qualify(CHECKPOINT_TABLE)} "
            f"WHERE table_name = {self.placeholder}",
            (table,),
        )
        if not rows:
            return None
        return int(rows[0][0]), int(rows[0][1])

    # ------------------------------------------------------------------
    # DDL
    # ------------------------------------------------------------------

    def render_foreign_key(self, edge: ForeignKeyEdge) -> str:
        return (
            f"CONSTRAINT {self.quote_identifier(self.constraint_name(edge))} "
            f"FOREIGN KEY ({self.column_list(edge.child_columns)}) "
            f"REFERENCES {self.qualify(edge.parent_table)} ({self.column_list(edge.parent_columns)})"
        )

    def render_create_table(self, table: MappedTable, inline_edges: Sequence[ForeignKeyEdge] = ()) -> str:
        lines = [
            f"    {self.quote_identifier(col.target_name)} {col.target_type}{'' if col.nullable else ' NOT NULL'}"
            for col in table.columns
        ]
        if table.primary_key:
            pk_name = self.normalize_identifier(f"{table.target_name}_pkey")
            lines.append(
                f"    CONSTRAINT {self.quote_identifier(pk_name)} PRIMARY KEY ({self.column_list(table.primary_key)})"
            )
        lines.extend(f"    {self.render_foreign_key(edge)}" for edge in inline_edges)
        return f"CREATE TABLE {self.qualify(table.target_name)} (\n" + ",\n".join(lines) + "\n)"

    def create_table(self, table: MappedTable, inline_edges: Sequence[ForeignKeyEdge] = ()):
        self.execute(self.render_create_table(table, inline_edges))
        logger.info("Table created", engine=self.engine, table=table.target_name, inline_constraints=len(inline_edges))

    def render_add_foreign_key(self, edge: ForeignKeyEdge) -> str:
        return f"ALTER TABLE {self.qualify(edge.child_table)} ADD {self.render_foreign_key(edge)}"

    def add_foreign_key(self, edge: ForeignKeyEdge):
        """Attach a constraint to a loaded table; fails if existing rows violate it"""
        self.execute(self.render_add_foreign_key(edge))
        logger.info("Constraint attached", engine=self.engine, child=edge.child_table, parent=edge.parent_table)

    def count_orphans(self, edge: ForeignKeyEdge) -> int:
        """Child rows whose non-null key has no matching parent row"""
        not_null = " AND ".join(f"c.{self.quote_identifier(col)} IS NOT NULL" for col in edge.child_columns)
        join = " AND ".join(
            f"p.{self.quote_identifier(parent)} = c.{self.quote_identifier(child)}"
            for child, parent in zip(edge.child_columns, edge.parent_columns)
        )
        return int(self.scalar(
            f"SELECT COUNT(*) FROM {self.qualify(edge.child_table)} c WHERE {not_null} "
            f"AND NOT EXISTS (SELECT 1 FROM {self.qualify(edge.parent_table)} p WHERE {join})"
        ))

    # ------------------------------------------------------------------
    # procedures
    # ------------------------------------------------------------------

    def deploy_procedure(self, procedure: TranslatedProcedure):
        raise UnsupportedOperationError(f"{self.engine} cannot host stored procedures")

    def call_procedure(self, procedure: ProcedureDescriptor, args: Sequence[Any] = ()) -> ProcedureResult:
        raise UnsupportedOperationError(f"{self.engine} has no stored procedures")
