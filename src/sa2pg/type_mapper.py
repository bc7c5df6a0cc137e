"""
Type mapping from SQL Anywhere domains to PostgreSQL types

The table is fixed and reviewed; anything outside it needs an explicit
operator override. Width-sensitive entries never map to a wider target.
"""

import re
import uuid
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import pyarrow as pa
import structlog

from .errors import CoercionError, MappingError
from .models import (
    ColumnDescriptor,
    ForeignKeyEdge,
    MappedColumn,
    MappedTable,
    TableDescriptor,
    TypeMappingEntry,
    WidthPolicy,
)
from .sqltext import parse_type_text, render_type

logger = structlog.get_logger()

MAX_DECIMAL128_PRECISION = 38
MAX_DECIMAL_PRECISION = 76

TYPE_TABLE: Tuple[TypeMappingEntry, ...] = (
    TypeMappingEntry("smallint", "smallint", source_bytes=2, target_bytes=2),
    TypeMappingEntry("integer", "integer", source_bytes=4, target_bytes=4),
    TypeMappingEntry("bigint", "bigint", source_bytes=8, target_bytes=8),
    TypeMappingEntry("real", "real", source_bytes=4, target_bytes=4),
    TypeMappingEntry("double", "double precision", source_bytes=8, target_bytes=8),
    TypeMappingEntry("bit", "boolean"),
    TypeMappingEntry("numeric", "numeric", WidthPolicy.PRECISION),
    TypeMappingEntry("decimal", "numeric", WidthPolicy.PRECISION),
    TypeMappingEntry("money", "numeric(19,4)"),
    TypeMappingEntry("smallmoney", "numeric(10,4)"),
    # SQL Anywhere CHAR is not blank-padded, so it behaves like VARCHAR
    TypeMappingEntry("char", "varchar", WidthPolicy.LENGTH),
    TypeMappingEntry("varchar", "varchar", WidthPolicy.LENGTH),
    TypeMappingEntry("nchar", "varchar", WidthPolicy.LENGTH),
    TypeMappingEntry("nvarchar", "varchar", WidthPolicy.LENGTH),
    TypeMappingEntry("long varchar", "text"),
    TypeMappingEntry("long nvarchar", "text"),
    TypeMappingEntry("text", "text"),
    TypeMappingEntry("xml", "xml"),
    TypeMappingEntry("binary", "bytea"),
    TypeMappingEntry("varbinary", "bytea"),
    TypeMappingEntry("long binary", "bytea"),
    TypeMappingEntry("image", "bytea"),
    TypeMappingEntry("date", "date"),
    TypeMappingEntry("time", "time"),
    TypeMappingEntry("timestamp", "timestamp"),
    TypeMappingEntry("timestamp with time zone", "timestamptz"),
    TypeMappingEntry("uniqueidentifier", "uuid"),
)

# Spellings folded onto a table entry before lookup
SOURCE_ALIASES = {
    "int": "integer",
    "double precision": "double",
    "dec": "decimal",
    "character": "char",
    "character varying": "varchar",
    "datetime": "timestamp",
    "smalldatetime": "timestamp",
    "uniqueidentifierstr": "char",
}

# Known domains with no single lossless target; they need an override
AMBIGUOUS_TYPES = {
    "tinyint": "unsigned 1-byte integer has no 1-byte target type",
    "unsigned smallint": "unsigned range exceeds smallint",
    "unsigned int": "unsigned range exceeds integer",
    "unsigned bigint": "unsigned range exceeds bigint",
    "float": "precision decides between real and double precision; declare float(p)",
    "varbit": "bit strings have no reviewed mapping",
    "long varbit": "bit strings have no reviewed mapping",
    "st_geometry": "spatial types need an extension on the target",
}

_ARROW_SIMPLE = {
    "smallint": pa.int16(),
    "integer": pa.int32(),
    "bigint": pa.int64(),
    "real": pa.float32(),
    "double precision": pa.float64(),
    "boolean": pa.bool_(),
    "varchar": pa.string(),
    "char": pa.string(),
    "text": pa.string(),
    "xml": pa.string(),
    "uuid": pa.string(),
    "bytea": pa.binary(),
    "date": pa.date32(),
    "time": pa.time64("us"),
    "timestamp": pa.timestamp("us"),
    "timestamptz": pa.timestamp("us", tz="UTC"),
}


def arrow_type_for(target_type: str) -> pa.DataType:
    """Arrow type used to carry values of a target column"""
    base, width, scale = parse_type_text(target_type)
    if base == "numeric":
        if width is None:
            # Unconstrained numeric keeps its exact text form
            return pa.string()
        if width > MAX_DECIMAL_PRECISION:
            raise MappingError(f"numeric precision {width} exceeds {MAX_DECIMAL_PRECISION}")
        factory = pa.decimal128 if width <= MAX_DECIMAL128_PRECISION else pa.decimal256
        return factory(width, scale or 0)
    if base in _ARROW_SIMPLE:
        return _ARROW_SIMPLE[base]
    raise MappingError(f"No value representation for target type '{target_type}'")


class TypeMapper:
    """Maps source columns to target types using the fixed table plus overrides"""

    def __init__(
        self,
        overrides: Optional[Mapping[str, str]] = None,
        normalize_identifier: Callable[[str], str] = str.lower,
        table: Sequence[TypeMappingEntry] = TYPE_TABLE,
    ):
        self.entries: Dict[str, TypeMappingEntry] = {}
        for entry in table:
            if entry.width_sensitive and (entry.target_bytes or 0) > entry.source_bytes:
                raise MappingError(
                    f"Mapping {entry.source_type} -> {entry.target_type} widens "
                    f"{entry.source_bytes} to {entry.target_bytes} bytes"
                )
            self.entries[entry.source_type] = entry

        self.overrides: Dict[str, str] = {}
        for source_type, target_type in (overrides or {}).items():
            # Fail fast on overrides naming a type we cannot carry
            arrow_type_for(target_type)
            self.overrides[source_type.strip().lower()] = target_type.strip()

        self.normalize_identifier = normalize_identifier

    def _canonical(self, source_type: str, width: Optional[int]) -> str:
        source_type = " ".join(source_type.lower().split())
        if source_type == "float" and width is not None:
            return "real" if width <= 24 else "double"
        return SOURCE_ALIASES.get(source_type, source_type)

    def map_type(self, source_type: str, width: Optional[int] = None, scale: Optional[int] = None,
                 subject: str = "") -> Tuple[str, pa.DataType]:
        """Resolve (target type, arrow type) for one declared source type"""
        declared = render_type(source_type, width, scale)
        name = " ".join(source_type.lower().split())

        for key in (declared.lower(), name, self._canonical(source_type, width)):
            if key in self.overrides:
                target = self.overrides[key]
                logger.warning("Type override applied", subject=subject, source_type=declared, target_type=target)
                return target, arrow_type_for(target)

        canonical = self._canonical(source_type, width)
        entry = self.entries.get(canonical)
        if entry is None:
            reason = AMBIGUOUS_TYPES.get(canonical, "no mapping in the reviewed type table")
            raise MappingError(f"{subject or 'value'}: source type '{declared}' is not mapped ({reason})")

        if entry.policy is WidthPolicy.LENGTH and width:
            target = render_type(entry.target_type, width)
        elif entry.policy is WidthPolicy.PRECISION and width:
            target = render_type(entry.target_type, width, scale if scale is not None else 0)
        else:
            target = entry.target_type
        return target, arrow_type_for(target)

    def map_column(self, table: str, column: ColumnDescriptor) -> MappedColumn:
        target_type, arrow_type = self.map_type(
            column.source_type, column.width, column.scale, subject=f"{table}.{column.name}"
        )
        return MappedColumn(
            source_name=column.name,
            target_name=self.normalize_identifier(column.name),
            source_type=render_type(column.source_type, column.width, column.scale),
            target_type=target_type,
            arrow_type=arrow_type,
            nullable=column.nullable,
        )

    def map_table(self, table: TableDescriptor) -> MappedTable:
        """Map every column; the first unmappable column aborts the table"""
        columns = tuple(self.map_column(table.name, col) for col in table.columns)

        target_names = [col.target_name for col in columns]
        duplicates = sorted({name for name in target_names if target_names.count(name) > 1})
        if duplicates:
            raise MappingError(f"{table.name}: columns collide after renaming: {duplicates}")

        by_source = {col.source_name: col.target_name for col in columns}
        return MappedTable(
            source=table,
            target_name=self.normalize_identifier(table.name),
            columns=columns,
            primary_key=tuple(by_source[name] for name in table.primary_key),
        )


def map_edge(edge: ForeignKeyEdge, tables: Mapping[str, MappedTable]) -> ForeignKeyEdge:
    """Express a source foreign key in target identifiers"""
    child, parent = tables[edge.child_table], tables[edge.parent_table]
    return ForeignKeyEdge(
        child_table=child.target_name,
        parent_table=parent.target_name,
        child_columns=tuple(child.target_column_for(col) for col in edge.child_columns),
        parent_columns=tuple(parent.target_column_for(col) for col in edge.parent_columns),
        name=edge.name,
    )


# ----------------------------------------------------------------------
# value coercion
# ----------------------------------------------------------------------

def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("boolean in numeric column")
    if isinstance(value, float):
        # Shortest repr round-trips to the same float
        return Decimal(repr(value))
    return Decimal(str(value).strip())


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, Decimal)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip() in ("0", "1"):
        return value.strip() == "1"
    raise ValueError(f"{value!r} is not a bit value")


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        return datetime.fromisoformat(value.strip())
    raise TypeError(f"{type(value).__name__} is not a timestamp")


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        if value.time() != time(0):
            raise ValueError(f"{value!r} carries a time of day")
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return _to_date(datetime.fromisoformat(value.strip()))
    raise TypeError(f"{type(value).__name__} is not a date")


def _to_time(value: Any) -> time:
    if isinstance(value, time):
        return value
    if isinstance(value, str):
        return time.fromisoformat(value.strip())
    raise TypeError(f"{type(value).__name__} is not a time")


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    raise TypeError(f"{type(value).__name__} is not binary")


def _to_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (uuid.UUID, int, Decimal)) and not isinstance(value, bool):
        return str(value)
    raise TypeError(f"{type(value).__name__} in character column")


def _to_integer(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)) and value == int(value):
        return int(value)
    if isinstance(value, str) and re.fullmatch(r"\s*-?\d+\s*", value):
        return int(value)
    raise ValueError(f"{value!r} is not an integer")


def _to_float(value: Any) -> float:
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        return float(value)
    raise TypeError(f"{type(value).__name__} in floating-point column")


def _normalizer(arrow_type: pa.DataType) -> Callable[[Any], Any]:
    if pa.types.is_decimal(arrow_type):
        return _to_decimal
    if pa.types.is_boolean(arrow_type):
        return _to_bool
    if pa.types.is_timestamp(arrow_type):
        return _to_datetime
    if pa.types.is_date(arrow_type):
        return _to_date
    if pa.types.is_time(arrow_type):
        return _to_time
    if pa.types.is_binary(arrow_type):
        return _to_bytes
    if pa.types.is_string(arrow_type):
        return _to_string
    if pa.types.is_integer(arrow_type):
        return _to_integer
    if pa.types.is_floating(arrow_type):
        return _to_float
    return lambda value: value


def coerce_rows(table: MappedTable, rows: Sequence[Sequence[Any]]) -> pa.Table:
    """Convert fetched rows into an Arrow table typed by the mapping

    Any value that does not fit its target type exactly raises CoercionError.
    """
    arrays: List[pa.Array] = []
    for index, column in enumerate(table.columns):
        normalize = _normalizer(column.arrow_type)
        try:
            values = [None if row[index] is None else normalize(row[index]) for row in rows]
            array = pa.array(values, type=column.arrow_type)
        except (pa.ArrowInvalid, pa.ArrowTypeError, InvalidOperation, OverflowError, ValueError, TypeError) as e:
            raise CoercionError(column.source_name, f"{column.source_type} -> {column.target_type}: {e}") from e
        if not column.nullable and array.null_count:
            raise CoercionError(column.source_name, f"{array.null_count} nulls in NOT NULL column")
        arrays.append(array)
    return pa.Table.from_arrays(arrays, schema=table.arrow_schema)


def arrow_rows(data: pa.Table) -> List[Tuple[Any, ...]]:
    """Row tuples in column order, ready for a DB-API executemany"""
    columns = [column.to_pylist() for column in data.columns]
    return list(zip(*columns)) if columns else []
