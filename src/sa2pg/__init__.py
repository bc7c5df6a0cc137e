"""
sa2pg - SQL Anywhere to PostgreSQL migration engine

Moves tables, rows and stored procedures in dependency-ordered phases,
validating each phase before the next one starts.
"""

__version__ = "0.1.0"

from .adapters import DatabaseAdapter, create_adapter
from .config import MigrationConfig, Settings, SourceConfig, TargetConfig, load_settings
from .errors import MigrationError
from .models import MigrationPlan, MigrationReport, ProcedureResult, ValidationRecord
from .pipeline import MigrationPipeline

__all__ = [
    "DatabaseAdapter",
    "create_adapter",
    "MigrationConfig",
    "Settings",
    "SourceConfig",
    "TargetConfig",
    "load_settings",
    "MigrationError",
    "MigrationPlan",
    "MigrationReport",
    "ProcedureResult",
    "ValidationRecord",
    "MigrationPipeline",
]
