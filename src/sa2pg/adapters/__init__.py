"""
Database adapters, selected by engine name
"""

from typing import Any, Union

from ..config import SourceConfig, TargetConfig
from ..errors import ConfigurationError
from .base import CHECKPOINT_TABLE, DatabaseAdapter


def create_adapter(config: Union[SourceConfig, TargetConfig], driver: Any = None) -> DatabaseAdapter:
    """Build the adapter variant for config.engine"""
    if config.engine == "sqlanywhere":
        from .sqlanywhere import SqlAnywhereAdapter
        return SqlAnywhereAdapter(config, driver=driver)
    if config.engine == "postgres":
        from .postgres import PostgresAdapter
        return PostgresAdapter(config, driver=driver)
    if config.engine == "sqlite":
        from .sqlite import SqliteAdapter
        return SqliteAdapter(config, driver=driver)
    raise ConfigurationError(f"Unsupported engine: {config.engine}")


__all__ = ["CHECKPOINT_TABLE", "DatabaseAdapter", "create_adapter"]
