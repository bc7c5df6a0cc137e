"""
Error taxonomy for the migration engine

Discovery, planning and mapping errors are raised before any row is written.
Movement errors halt a single table, validation errors halt phase progression.
"""

from typing import Dict, List, Optional


class MigrationError(Exception):
    """Base class for every error raised by sa2pg"""


class ConfigurationError(MigrationError):
    """Invalid or incomplete parameter file"""


class AdapterConnectionError(MigrationError):
    """An engine could not be reached or a connection could not be opened"""

    def __init__(self, engine: str, message: str):
        super().__init__(f"[{engine}] {message}")
        self.engine = engine


class QueryExecutionError(MigrationError):
    """A statement failed on an open connection"""

    def __init__(self, engine: str, message: str, transient: bool = False, statement: Optional[str] = None):
        super().__init__(f"[{engine}] {message}")
        self.engine = engine
        self.transient = transient
        self.statement = statement


class UnsupportedOperationError(MigrationError):
    """The selected engine has no equivalent for the requested operation"""


class DiscoveryError(MigrationError):
    """Catalog could not be read or returned a malformed row"""


class SchemaConflictError(DiscoveryError):
    """A target table exists with a schema that differs from the mapped source table"""

    def __init__(self, table: str, drift: Dict[str, List[str]]):
        details = ", ".join(f"{key}={value}" for key, value in drift.items() if value)
        super().__init__(f"Target table {table} diverges from source: {details}")
        self.table = table
        self.drift = drift


class PlanningError(MigrationError):
    """Dependency graph cannot be turned into phases"""


class MappingError(MigrationError):
    """Source type is unmapped, ambiguous or would be converted lossily"""


class CoercionError(MigrationError):
    """A value cannot be represented in its mapped target type without loss"""

    def __init__(self, column: str, message: str):
        super().__init__(f"column {column}: {message}")
        self.column = column


class MovementError(MigrationError):
    """Batch transfer failed after retries, or the target state is inconsistent"""

    def __init__(self, table: str, message: str, rows_committed: int = 0):
        super().__init__(f"{table}: {message}")
        self.table = table
        self.rows_committed = rows_committed


class ValidationMismatchError(MigrationError):
    """Source and target disagree after a phase"""

    def __init__(self, phase_index: Optional[int], failed_subjects: List[str]):
        stage = f"Phase {phase_index}" if phase_index is not None else "Procedure stage"
        super().__init__(f"{stage} failed validation for: {', '.join(failed_subjects)}")
        self.phase_index = phase_index
        self.failed_subjects = failed_subjects


class MigrationCancelled(MigrationError):
    """Cancellation was requested; committed batches are kept and resumable"""
