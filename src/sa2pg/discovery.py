"""
Schema discovery against the source catalog
"""

from dataclasses import replace
from typing import Dict, Iterable, List, Optional

import structlog

from .adapters import DatabaseAdapter
from .errors import DiscoveryError, QueryExecutionError
from .models import CancelToken, MappedTable, ParameterMode, ProcedureDescriptor, SchemaSnapshot, TableDescriptor
from .sqltext import classify_behavior, render_type

logger = structlog.get_logger()


class SchemaDiscoverer:
    """Reads tables, foreign keys and procedures from the source engine"""

    def __init__(
        self,
        adapter: DatabaseAdapter,
        include: Optional[Iterable[str]] = None,
        exclude: Optional[Iterable[str]] = None,
        cancel_token: Optional[CancelToken] = None,
    ):
        self.adapter = adapter
        self.include = [name.lower() for name in include or []]
        self.exclude = {name.lower() for name in exclude or []}
        self.cancel_token = cancel_token or CancelToken()

    def discover(self, with_procedures: bool = True) -> SchemaSnapshot:
        """Capture a consistent snapshot of everything in scope"""
        try:
            names = self._select_tables(self.adapter.list_tables())

            tables = []
            for name in names:
                self.cancel_token.raise_if_cancelled("discovery")
                tables.append(self._checked(self.adapter.describe_table(name)))

            selected = set(names)
            edges = [edge for edge in self.adapter.list_foreign_keys() if edge.child_table in selected]

            procedures: List[ProcedureDescriptor] = []
            if with_procedures:
                procedures = [self._classified(proc) for proc in self.adapter.list_procedures()]
        except QueryExecutionError as e:
            raise DiscoveryError(f"Catalog query failed on {self.adapter.engine}: {e}") from e

        logger.info(
            "Schema discovered",
            engine=self.adapter.engine,
            tables=len(tables),
            foreign_keys=len(edges),
            procedures=len(procedures),
            rows=sum(table.row_count for table in tables),
        )
        return SchemaSnapshot(tables=tables, foreign_keys=edges, procedures=procedures)

    def _select_tables(self, names: List[str]) -> List[str]:
        available = {name.lower(): name for name in names}
        if self.include:
            missing = [name for name in self.include if name not in available]
            if missing:
                raise DiscoveryError(f"Included tables not found in source: {missing}")
            names = [available[name] for name in self.include]
        return sorted(name for name in names if name.lower() not in self.exclude)

    def _checked(self, table: TableDescriptor) -> TableDescriptor:
        if not table.columns:
            raise DiscoveryError(f"Catalog returned no columns for {table.name}")
        known = set(table.column_names)
        if len(known) != len(table.columns):
            raise DiscoveryError(f"Catalog returned duplicate columns for {table.name}")
        unknown = [col for col in table.primary_key if col not in known]
        if unknown:
            raise DiscoveryError(f"Primary key of {table.name} names unknown columns {unknown}")
        return table

    def _classified(self, procedure: ProcedureDescriptor) -> ProcedureDescriptor:
        has_result = bool(procedure.result_columns) or any(
            p.mode is not ParameterMode.IN for p in procedure.parameters
        )
        behavior = classify_behavior(procedure.source_text, has_result)
        logger.debug("Procedure classified", procedure=procedure.name, behavior=behavior.value)
        return replace(procedure, behavior=behavior)


def _comparable(type_name: str) -> str:
    return "".join(type_name.lower().split())


def detect_drift(expected: MappedTable, actual: TableDescriptor) -> Dict[str, List[str]]:
    """Compare a mapped table with an existing target table

    new_columns are mapped but missing on the target, removed_columns exist
    only on the target, type_changes differ in declared type.
    """
    expected_types = {col.target_name.lower(): col.target_type for col in expected.columns}
    actual_types = {
        col.name.lower(): render_type(col.source_type, col.width, col.scale) for col in actual.columns
    }

    new_columns = sorted(set(expected_types) - set(actual_types))
    removed_columns = sorted(set(actual_types) - set(expected_types))
    type_changes = sorted(
        f"{name}: {actual_types[name]} -> {expected_types[name]}"
        for name in set(expected_types) & set(actual_types)
        if _comparable(expected_types[name]) != _comparable(actual_types[name])
    )
    return {"new_columns": new_columns, "removed_columns": removed_columns, "type_changes": type_changes}


def has_drift(drift: Dict[str, List[str]]) -> bool:
    return any(drift.values())
