"""
SQL Anywhere source adapter (sqlanydb)
"""

from typing import Any, Dict, List, Sequence

import structlog

from ..errors import DiscoveryError
from ..models import (
    ColumnDescriptor,
    ForeignKeyEdge,
    ParameterMode,
    ProcedureDescriptor,
    ProcedureParameter,
    ProcedureResult,
    TableDescriptor,
)
from .base import CHECKPOINT_TABLE, DatabaseAdapter

logger = structlog.get_logger()

_LIST_TABLES = """
SELECT t.table_name
FROM SYS.SYSTAB t
JOIN SYS.SYSUSER u ON u.user_id = t.creator
WHERE u.user_name = ? AND t.table_type = 1
ORDER BY t.table_name
"""

_DESCRIBE_COLUMNS = """
SELECT c.column_name, d.domain_name, c.width, c.scale, c.nulls, c.column_id
FROM SYS.SYSTABCOL c
JOIN SYS.SYSTAB t ON t.table_id = c.table_id
JOIN SYS.SYSUSER u ON u.user_id = t.creator
JOIN SYS.SYSDOMAIN d ON d.domain_id = c.domain_id
WHERE u.user_name = ? AND t.table_name = ?
ORDER BY c.column_id
"""

_PRIMARY_KEY = """
SELECT c.column_name
FROM SYS.SYSIDX i
JOIN SYS.SYSTAB t ON t.table_id = i.table_id
JOIN SYS.SYSUSER u ON u.user_id = t.creator
JOIN SYS.SYSIDXCOL ic ON ic.table_id = i.table_id AND ic.index_id = i.index_id
JOIN SYS.SYSTABCOL c ON c.table_id = ic.table_id AND c.column_id = ic.column_id
WHERE u.user_name = ? AND t.table_name = ? AND i.index_category = 1
ORDER BY ic.sequence
"""

_FOREIGN_KEYS = """
SELECT fi.index_name, ft.table_name, pt.table_name, fc.column_name, pc.column_name
FROM SYS.SYSFKEY fk
JOIN SYS.SYSTAB ft ON ft.table_id = fk.foreign_table_id
JOIN SYS.SYSTAB pt ON pt.table_id = fk.primary_table_id
JOIN SYS.SYSUSER u ON u.user_id = ft.creator
JOIN SYS.SYSIDX fi ON fi.table_id = fk.foreign_table_id AND fi.index_id = fk.foreign_index_id
JOIN SYS.SYSIDXCOL ic ON ic.table_id = fk.foreign_table_id AND ic.index_id = fk.foreign_index_id
JOIN SYS.SYSTABCOL fc ON fc.table_id = ic.table_id AND fc.column_id = ic.column_id
JOIN SYS.SYSTABCOL pc ON pc.table_id = fk.primary_table_id AND pc.column_id = ic.primary_column_id
WHERE u.user_name = ?
ORDER BY ft.table_name, fi.index_name, ic.sequence
"""

_LIST_PROCEDURES = """
SELECT p.proc_id, p.proc_name, p.proc_defn
FROM SYS.SYSPROCEDURE p
JOIN SYS.SYSUSER u ON u.user_id = p.creator
WHERE u.user_name = ?
ORDER BY p.proc_name
"""

_PROCEDURE_PARAMETERS = """
SELECT pp.proc_id, pp.parm_name, pp.parm_type, pp.parm_mode_in, pp.parm_mode_out,
       d.domain_name, pp.width, pp.scale
FROM SYS.SYSPROCPARM pp
JOIN SYS.SYSPROCEDURE p ON p.proc_id = pp.proc_id
JOIN SYS.SYSUSER u ON u.user_id = p.creator
JOIN SYS.SYSDOMAIN d ON d.domain_id = pp.domain_id
WHERE u.user_name = ?
ORDER BY pp.proc_id, pp.parm_id
"""

# SYSPROCPARM.parm_type
PARM_NORMAL = 0
PARM_RESULT = 1
PARM_RETURN = 4

# Only these domains carry a declared length or precision
_SIZED_DOMAINS = {"char", "varchar", "nchar", "nvarchar", "binary", "varbinary", "numeric", "decimal", "float"}


def _sized(domain: str, width, scale):
    domain = domain.lower()
    if domain not in _SIZED_DOMAINS:
        return None, None
    if domain in ("numeric", "decimal"):
        return int(width), int(scale or 0)
    return int(width), None


class SqlAnywhereAdapter(DatabaseAdapter):
    """SQL Anywhere source; catalog read from the SYS views"""

    engine = "sqlanywhere"
    placeholder = "?"
    supports_procedures = True

    def _load_driver(self):
        import sqlanydb
        return sqlanydb

    def _open_connection(self):
        params: Dict[str, Any] = {"uid": self.config.user, "pwd": self.config.password}
        if self.config.server:
            params["eng"] = self.config.server
        if self.config.database:
            params["dbn"] = self.config.database
        if self.config.host:
            host = self.config.host
            params["host"] = host if ":" in host else f"{host}:{self.config.port}"
        if self.config.encryption:
            params["enc"] = self.config.encryption
        return self.driver.connect(**params)

    @property
    def schema(self) -> str:
        return self.config.owner

    def normalize_identifier(self, name: str) -> str:
        # SQL Anywhere identifiers are case-insensitive; keep the declared spelling
        return name

    def describe_location(self) -> str:
        return self.config.host or self.config.server

    def _paginate(self, select_list: str, table: str, order: str, offset: int, limit: int) -> str:
        return f"SELECT TOP {int(limit)} START AT {int(offset) + 1} {select_list} FROM {table} ORDER BY {order}"

    def _checkpoint_upsert_sql(self) -> str:
        return (
            f"INSERT INTO {self.qualify(CHECKPOINT_TABLE)} "
            f"(table_name, rows_committed, batches_committed, updated_at) "
            f"ON EXISTING UPDATE VALUES (?, ?, ?, ?)"
        )

    def list_tables(self) -> List[str]:
        _, rows = self.query_rows(_LIST_TABLES, (self.schema,))
        return [row[0] for row in rows if row[0] != CHECKPOINT_TABLE]

    def describe_table(self, name: str) -> TableDescriptor:
        _, rows = self.query_rows(_DESCRIBE_COLUMNS, (self.schema, name))
        if not rows:
            raise DiscoveryError(f"Table {self.schema}.{name} not found")

        columns = []
        for column_name, domain, width, scale, nulls, column_id in rows:
            if not column_name or not domain:
                raise DiscoveryError(f"Malformed catalog row for {name}: {column_name!r} {domain!r}")
            width, scale = _sized(domain, width, scale)
            columns.append(ColumnDescriptor(
                name=column_name,
                source_type=domain.lower(),
                width=width,
                scale=scale,
                nullable=str(nulls).upper() == "Y",
                position=int(column_id),
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
        for role, child, parent, child_col, parent_col in rows:
            grouped.setdefault((child, role, parent), []).append((child_col, parent_col))
        return [
            ForeignKeyEdge(
                child_table=child,
                parent_table=parent,
                child_columns=tuple(pair[0] for pair in pairs),
                parent_columns=tuple(pair[1] for pair in pairs),
                name=role,
            )
            for (child, role, parent), pairs in grouped.items()
        ]

    def list_procedures(self) -> List[ProcedureDescriptor]:
        _, procedures = self.query_rows(_LIST_PROCEDURES, (self.schema,))
        _, parameter_rows = self.query_rows(_PROCEDURE_PARAMETERS, (self.schema,))

        parameters: Dict[int, List[tuple]] = {}
        for row in parameter_rows:
            parameters.setdefault(row[0], []).append(row[1:])

        descriptors = []
        for proc_id, name, definition in procedures:
            rows = parameters.get(proc_id, [])
            if any(parm_type == PARM_RETURN for _, parm_type, *_ in rows):
                logger.info("Skipping user-defined function", procedure=name)
                continue

            params, results = [], []
            for parm_name, parm_type, mode_in, mode_out, domain, width, scale in rows:
                width, scale = _sized(domain, width, scale)
                if parm_type == PARM_RESULT:
                    results.append(ProcedureParameter(parm_name, domain.lower(), ParameterMode.OUT, width, scale))
                elif parm_type == PARM_NORMAL:
                    is_in, is_out = str(mode_in).upper() == "Y", str(mode_out).upper() == "Y"
                    mode = ParameterMode.INOUT if is_in and is_out else (
                        ParameterMode.OUT if is_out else ParameterMode.IN)
                    params.append(ProcedureParameter(parm_name, domain.lower(), mode, width, scale))

            descriptors.append(ProcedureDescriptor(
                name=name,
                owner=self.schema,
                parameters=tuple(params),
                result_columns=tuple(results),
                source_text=definition or "",
            ))
        return descriptors

    def call_procedure(self, procedure: ProcedureDescriptor, args: Sequence[Any] = ()) -> ProcedureResult:
        """CALL the procedure and shape its outcome as rows

        A call that produces no result set is reported as a single
        affected_rows row so both engines answer the same way.
        """
        placeholders = ", ".join([self.placeholder] * len(args))
        sql = f"CALL {self.qualify(procedure.name)}({placeholders})"

        with self.transaction() as conn:
            cursor = self._execute(conn, sql, args)
            if procedure.returns_result_set and cursor.description is not None:
                columns, rows = self._fetch(cursor)
                return ProcedureResult(columns, rows, procedure.behavior, native_result_set=True)

            affected = max(cursor.rowcount or 0, 0)
            cursor.close()
            return ProcedureResult(("affected_rows",), [(affected,)], procedure.behavior, native_result_set=False)
