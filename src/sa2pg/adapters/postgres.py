"""
PostgreSQL target adapter (psycopg2)
"""

import re
from typing import Any, Dict, List, Sequence

import structlog

from ..errors import DiscoveryError
from ..models import (
    ColumnDescriptor,
    ForeignKeyEdge,
    ParameterMode,
    ProcedureBehavior,
    ProcedureDescriptor,
    ProcedureParameter,
    ProcedureResult,
    TableDescriptor,
    TranslatedProcedure,
)
from ..sqltext import parse_type_text, split_top_level
from .base import CHECKPOINT_TABLE, DatabaseAdapter

logger = structlog.get_logger()

# format_type() spellings folded back to the names used in generated DDL
_TYPE_ALIASES = [
    (re.compile(r"^timestamp(\(\d+\))? without time zone$"), r"timestamp\1"),
    (re.compile(r"^timestamp(\(\d+\))? with time zone$"), r"timestamptz\1"),
    (re.compile(r"^time(\(\d+\))? without time zone$"), r"time\1"),
    (re.compile(r"^time(\(\d+\))? with time zone$"), r"timetz\1"),
    (re.compile(r"^character varying"), "varchar"),
    (re.compile(r"^character"), "char"),
]

_LIST_TABLES = """
SELECT c.relname
FROM pg_catalog.pg_class c
JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
WHERE n.nspname = %s AND c.relkind IN ('r', 'p')
ORDER BY c.relname
"""

_DESCRIBE_COLUMNS = """
SELECT a.attname, pg_catalog.format_type(a.atttypid, a.atttypmod), NOT a.attnotnull, a.attnum
FROM pg_catalog.pg_attribute a
JOIN pg_catalog.pg_class c ON c.oid = a.attrelid
JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
WHERE n.nspname = %s AND c.relname = %s AND a.attnum > 0 AND NOT a.attisdropped
ORDER BY a.attnum
"""

_PRIMARY_KEY = """
SELECT a.attname
FROM pg_catalog.pg_index i
JOIN pg_catalog.pg_class c ON c.oid = i.indrelid
JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
JOIN LATERAL unnest(i.indkey) WITH ORDINALITY AS k(attnum, ord) ON true
JOIN pg_catalog.pg_attribute a ON a.attrelid = c.oid AND a.attnum = k.attnum
WHERE n.nspname = %s AND c.relname = %s AND i.indisprimary
ORDER BY k.ord
"""

_FOREIGN_KEYS = """
SELECT con.conname, child.relname, parent.relname, ca.attname, pa.attname
FROM pg_catalog.pg_constraint con
JOIN pg_catalog.pg_class child ON child.oid = con.conrelid
JOIN pg_catalog.pg_class parent ON parent.oid = con.confrelid
JOIN pg_catalog.pg_namespace n ON n.oid = child.relnamespace
JOIN LATERAL unnest(con.conkey, con.confkey) WITH ORDINALITY AS k(child_attnum, parent_attnum, ord) ON true
JOIN pg_catalog.pg_attribute ca ON ca.attrelid = con.conrelid AND ca.attnum = k.child_attnum
JOIN pg_catalog.pg_attribute pa ON pa.attrelid = con.confrelid AND pa.attnum = k.parent_attnum
WHERE con.contype = 'f' AND n.nspname = %s
ORDER BY child.relname, con.conname, k.ord
"""

_LIST_FUNCTIONS = """
SELECT p.proname,
       pg_catalog.pg_get_function_arguments(p.oid),
       pg_catalog.pg_get_function_result(p.oid),
       p.provolatile,
       p.prosrc
FROM pg_catalog.pg_proc p
JOIN pg_catalog.pg_namespace n ON n.oid = p.pronamespace
WHERE n.nspname = %s AND p.prokind = 'f'
ORDER BY p.proname
"""


def normalize_pg_type(type_name: str) -> str:
    normalized = " ".join(type_name.lower().split())
    for pattern, replacement in _TYPE_ALIASES:
        if pattern.search(normalized):
            return pattern.sub(replacement, normalized, count=1)
    return normalized


def _parse_argument(text: str) -> ProcedureParameter:
    mode = ParameterMode.IN
    parts = text.split(None, 1)
    if parts and parts[0].upper() in ("IN", "OUT", "INOUT"):
        mode = ParameterMode(parts[0].lower())
        parts = parts[1].split(None, 1)
    if len(parts) == 1:
        # Unnamed argument
        parts = ["", parts[0]]
    name, type_text = parts[0], re.split(r"\s+DEFAULT\s+", parts[1], flags=re.I)[0]
    base, width, scale = parse_type_text(normalize_pg_type(type_text))
    return ProcedureParameter(name=name, source_type=base, mode=mode, width=width, scale=scale)


class PostgresAdapter(DatabaseAdapter):
    """PostgreSQL target; objects live in the configured schema"""

    engine = "postgres"
    placeholder = "%s"
    supports_procedures = True

    def _load_driver(self):
        import psycopg2
        return psycopg2

    def _open_connection(self):
        params: Dict[str, Any] = {
            "host": self.config.host,
            "port": self.config.port,
            "dbname": self.config.database,
            "user": self.config.user,
            "password": self.config.password,
            "connect_timeout": self.config.connect_timeout,
            "application_name": "sa2pg",
        }
        if self.config.sslmode:
            params["sslmode"] = self.config.sslmode
        if self.config.sslrootcert:
            params["sslrootcert"] = self.config.sslrootcert
        return self.driver.connect(**params)

    @property
    def schema(self) -> str:
        return self.config.schema_name

    def describe_location(self) -> str:
        return f"{self.config.host}:{self.config.port}/{self.config.database}"

    def list_tables(self) -> List[str]:
        _, rows = self.query_rows(_LIST_TABLES, (self.schema,))
        return [row[0] for row in rows if row[0] != CHECKPOINT_TABLE]

    def describe_table(self, name: str) -> TableDescriptor:
        _, rows = self.query_rows(_DESCRIBE_COLUMNS, (self.schema, name))
        if not rows:
            raise DiscoveryError(f"Table {self.schema}.{name} not found")

        columns = []
        for column_name, type_name, nullable, position in rows:
            base, width, scale = parse_type_text(normalize_pg_type(type_name))
            columns.append(ColumnDescriptor(
                name=column_name, source_type=base, width=width, scale=scale,
                nullable=bool(nullable), position=int(position),
            ))
        _, pk_rows = self.query_rows(_PRIMARY_KEY, (self.schema, name))

        return TableDescriptor(
            name=name,
            owner=self.schema,
            columns=tuple(columns),
            primary_key=tuple(row[0] for row in pk_rows),
            row_count=self.row_count(name),
        )

    def list_foreign_keys(self) -> List[ForeignKeyEdge]:
        _, rows = self.query_rows(_FOREIGN_KEYS, (self.schema,))
        grouped: Dict[tuple, List[tuple]] = {}
        for name, child, parent, child_col, parent_col in rows:
            grouped.setdefault((child, name, parent), []).append((child_col, parent_col))
        return [
            ForeignKeyEdge(
                child_table=child,
                parent_table=parent,
                child_columns=tuple(pair[0] for pair in pairs),
                parent_columns=tuple(pair[1] for pair in pairs),
                name=name,
            )
            for (child, name, parent), pairs in grouped.items()
        ]

    def list_procedures(self) -> List[ProcedureDescriptor]:
        _, rows = self.query_rows(_LIST_FUNCTIONS, (self.schema,))
        procedures = []
        for name, arguments, result, volatility, source in rows:
            parameters = tuple(_parse_argument(arg) for arg in split_top_level(arguments or ""))
            result_columns = ()
            table_result = re.match(r"^TABLE\((.*)\)$", result or "", re.S)
            if table_result:
                result_columns = tuple(_parse_argument(col) for col in split_top_level(table_result.group(1)))
            procedures.append(ProcedureDescriptor(
                name=name,
                owner=self.schema,
                parameters=parameters,
                result_columns=result_columns,
                # Only IMMUTABLE and STABLE functions are known not to write
                behavior=(ProcedureBehavior.READ_ONLY if volatility in ("i", "s")
                          else ProcedureBehavior.MUTATING_WITH_RESULT),
                source_text=source or "",
            ))
        return procedures

    def _insert_rows(self, conn, table: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]):
        from psycopg2.extras import execute_values

        sql = f"INSERT INTO {self.qualify(table)} ({self.column_list(columns)}) VALUES %s"
        cursor = conn.cursor()
        try:
            execute_values(cursor, sql, rows, page_size=max(len(rows), 1))
        except self.driver.Error as e:
            raise self._query_error(e, sql) from e
        finally:
            cursor.close()

    def deploy_procedure(self, procedure: TranslatedProcedure):
        self.execute(procedure.ddl)
        logger.info("Function deployed", engine=self.engine, function=procedure.target_name)

    def call_procedure(self, procedure: ProcedureDescriptor, args: Sequence[Any] = ()) -> ProcedureResult:
        """Call the translated function; it always answers with a row set"""
        placeholders = ", ".join([self.placeholder] * len(args))
        sql = f"SELECT * FROM {self.qualify(self.normalize_identifier(procedure.name))}({placeholders})"
        # Committed so mutating functions keep their effects
        with self.transaction() as conn:
            columns, rows = self._fetch(self._execute(conn, sql, args))
        return ProcedureResult(
            columns=columns,
            rows=rows,
            behavior=procedure.behavior,
            native_result_set=procedure.returns_result_set,
        )
