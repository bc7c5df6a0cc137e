"""
Data models for the migration pipeline
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import pyarrow as pa

from .errors import MigrationCancelled


@dataclass(frozen=True)
class ColumnDescriptor:
    """Source column as captured from the catalog"""
    name: str
    source_type: str
    width: Optional[int] = None
    scale: Optional[int] = None
    nullable: bool = True
    position: int = 0


@dataclass(frozen=True)
class TableDescriptor:
    """Source table as captured by discovery"""
    name: str
    owner: str
    columns: Tuple[ColumnDescriptor, ...]
    primary_key: Tuple[str, ...] = ()
    row_count: int = 0

    def column(self, name: str) -> ColumnDescriptor:
        for col in self.columns:
            if col.name == name:
                return col
        raise KeyError(name)

    @property
    def column_names(self) -> List[str]:
        return [col.name for col in self.columns]


@dataclass(frozen=True)
class ForeignKeyEdge:
    """child_table(child_columns) references parent_table(parent_columns)"""
    child_table: str
    parent_table: str
    child_columns: Tuple[str, ...]
    parent_columns: Tuple[str, ...]
    name: Optional[str] = None

    @property
    def is_self_reference(self) -> bool:
        return self.child_table == self.parent_table


class PhaseKind(str, Enum):
    STANDARD = "standard"
    DEFERRED_CONSTRAINT = "deferred-constraint"


@dataclass(frozen=True)
class MigrationPhase:
    """Tables that can be loaded together once earlier phases are validated"""
    index: int
    kind: PhaseKind
    tables: Tuple[str, ...]
    cycle_groups: Tuple[Tuple[str, ...], ...] = ()
    deferred_edges: Tuple[ForeignKeyEdge, ...] = ()

    @property
    def is_deferred(self) -> bool:
        return self.kind is PhaseKind.DEFERRED_CONSTRAINT


@dataclass(frozen=True)
class MigrationPlan:
    """Ordered phases plus the edges created inline with their child table"""
    phases: Tuple[MigrationPhase, ...]
    inline_edges: Tuple[ForeignKeyEdge, ...]

    def phase_of(self, table: str) -> MigrationPhase:
        for phase in self.phases:
            if table in phase.tables:
                return phase
        raise KeyError(table)

    def inline_edges_for(self, table: str) -> List[ForeignKeyEdge]:
        return [edge for edge in self.inline_edges if edge.child_table == table]

    @property
    def deferred_edges(self) -> List[ForeignKeyEdge]:
        return [edge for phase in self.phases for edge in phase.deferred_edges]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phases": [
                {
                    "index": phase.index,
                    "kind": phase.kind.value,
                    "tables": list(phase.tables),
                    "cycle_groups": [list(group) for group in phase.cycle_groups],
                    "deferred_edges": [_edge_to_dict(edge) for edge in phase.deferred_edges],
                }
                for phase in self.phases
            ],
            "inline_edges": [_edge_to_dict(edge) for edge in self.inline_edges],
        }


def _edge_to_dict(edge: ForeignKeyEdge) -> Dict[str, Any]:
    return {
        "child": edge.child_table,
        "parent": edge.parent_table,
        "child_columns": list(edge.child_columns),
        "parent_columns": list(edge.parent_columns),
        "name": edge.name,
    }


class WidthPolicy(str, Enum):
    """Which declared parameters a mapped type carries over"""
    NONE = "none"
    LENGTH = "length"
    PRECISION = "precision"


@dataclass(frozen=True)
class TypeMappingEntry:
    """One row of the fixed source -> target type table"""
    source_type: str
    target_type: str
    policy: WidthPolicy = WidthPolicy.NONE
    source_bytes: Optional[int] = None
    target_bytes: Optional[int] = None

    @property
    def width_sensitive(self) -> bool:
        return self.source_bytes is not None


@dataclass(frozen=True)
class MappedColumn:
    source_name: str
    target_name: str
    source_type: str
    target_type: str
    arrow_type: pa.DataType
    nullable: bool = True


@dataclass(frozen=True)
class MappedTable:
    """Table descriptor translated to target identifiers and types"""
    source: TableDescriptor
    target_name: str
    columns: Tuple[MappedColumn, ...]
    primary_key: Tuple[str, ...] = ()

    @property
    def source_name(self) -> str:
        return self.source.name

    @property
    def source_columns(self) -> List[str]:
        return [col.source_name for col in self.columns]

    @property
    def target_columns(self) -> List[str]:
        return [col.target_name for col in self.columns]

    @property
    def arrow_schema(self) -> pa.Schema:
        return pa.schema([pa.field(col.target_name, col.arrow_type, nullable=col.nullable) for col in self.columns])

    @property
    def target_type_map(self) -> Dict[str, str]:
        return {col.target_name: col.target_type for col in self.columns}

    def order_by_source(self) -> List[str]:
        """Source columns that give a stable batch order"""
        if self.source.primary_key:
            return list(self.source.primary_key)
        return self.source_columns

    def order_by_target(self) -> List[str]:
        if self.primary_key:
            return list(self.primary_key)
        return self.target_columns

    def target_column_for(self, source_name: str) -> str:
        for col in self.columns:
            if col.source_name == source_name:
                return col.target_name
        raise KeyError(source_name)


class ParameterMode(str, Enum):
    IN = "in"
    OUT = "out"
    INOUT = "inout"


class ProcedureBehavior(str, Enum):
    """How the source engine reports the outcome of a procedure call"""
    READ_ONLY = "read-only"
    MUTATING_WITH_RESULT = "mutating-with-result"
    MUTATING_NO_RESULT = "mutating-no-result"

    @property
    def is_mutating(self) -> bool:
        return self is not ProcedureBehavior.READ_ONLY


@dataclass(frozen=True)
class ProcedureParameter:
    name: str
    source_type: str
    mode: ParameterMode = ParameterMode.IN
    width: Optional[int] = None
    scale: Optional[int] = None


@dataclass(frozen=True)
class ProcedureDescriptor:
    """Stored procedure with its explicit behavior flag"""
    name: str
    owner: str
    parameters: Tuple[ProcedureParameter, ...] = ()
    result_columns: Tuple[ProcedureParameter, ...] = ()
    behavior: ProcedureBehavior = ProcedureBehavior.READ_ONLY
    source_text: str = ""

    @property
    def input_parameters(self) -> List[ProcedureParameter]:
        return [p for p in self.parameters if p.mode in (ParameterMode.IN, ParameterMode.INOUT)]

    @property
    def returns_result_set(self) -> bool:
        return self.behavior is not ProcedureBehavior.MUTATING_NO_RESULT


@dataclass
class ProcedureResult:
    """Uniform tabular outcome of a logical operation on any engine"""
    columns: Tuple[str, ...]
    rows: List[Tuple[Any, ...]]
    behavior: ProcedureBehavior
    native_result_set: bool = True

    def as_dicts(self) -> List[Dict[str, Any]]:
        return [dict(zip(self.columns, row)) for row in self.rows]


@dataclass
class TranslatedProcedure:
    """Target function definition plus what a reviewer needs to know"""
    name: str
    target_name: str
    ddl: str
    returns: List[Tuple[str, str]]
    behavior: ProcedureBehavior
    behavior_notes: List[str] = field(default_factory=list)
    manual_review: List[str] = field(default_factory=list)

    @property
    def requires_review(self) -> bool:
        return bool(self.manual_review)


@dataclass
class ValidationRecord:
    """Outcome of comparing one table or procedure between source and target"""
    subject: str
    kind: str
    phase_index: Optional[int]
    passed: bool
    source_count: Optional[int] = None
    target_count: Optional[int] = None
    count_match: Optional[bool] = None
    sample_match: Optional[bool] = None
    orphan_count: int = 0
    mismatches: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    checked_at: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass
class TableMoveResult:
    """Data mover outcome for one table"""
    table_name: str
    target_table: str
    source_rows: int
    rows_committed: int
    batches_committed: int
    resumed_from: int
    execution_time_seconds: float
    success: bool
    error_message: Optional[str] = None


@dataclass
class SchemaSnapshot:
    """Everything discovery captured from the source"""
    tables: List[TableDescriptor]
    foreign_keys: List[ForeignKeyEdge]
    procedures: List[ProcedureDescriptor]

    def table(self, name: str) -> TableDescriptor:
        for table in self.tables:
            if table.name == name:
                return table
        raise KeyError(name)


@dataclass
class MigrationReport:
    plan: Optional[MigrationPlan] = None
    move_results: Dict[str, TableMoveResult] = field(default_factory=dict)
    validation_records: List[ValidationRecord] = field(default_factory=list)
    procedures: List[TranslatedProcedure] = field(default_factory=list)
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    finished_at: Optional[str] = None

    def record_for(self, subject: str, kind: str = "table") -> Optional[ValidationRecord]:
        found = None
        for record in self.validation_records:
            if record.subject == subject and record.kind == kind:
                found = record
        return found

    @property
    def complete(self) -> bool:
        """Every planned table carries a passing validation record"""
        if self.plan is None:
            return False
        for phase in self.plan.phases:
            for table in phase.tables:
                record = self.record_for(table)
                if record is None or not record.passed:
                    return False
        return True


class CancelToken:
    """Cooperative cancellation checked between batches"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str = ""):
        if self._event.is_set():
            raise MigrationCancelled(f"Cancelled{' during ' + where if where else ''}")
