"""
Configuration for the migration pipeline

Connection parameters come from an external parameter file (KEY=value lines)
and may be overridden by SA2PG_* environment variables.
"""

import ipaddress
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

from dotenv import dotenv_values
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError

ENV_PREFIX = "SA2PG_"

SECURE_SSL_MODES = {"require", "verify-ca", "verify-full"}
LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1", "host.docker.internal"}


class SourceConfig(BaseModel):
    """Source engine connection (SQL Anywhere, or SQLite for local runs)"""
    engine: Literal["sqlanywhere", "sqlite"] = Field(default="sqlanywhere", description="Source engine")
    host: Optional[str] = Field(default=None, description="Host[:port] of the database server")
    port: int = Field(default=2638, description="SQL Anywhere TCP/IP port")
    server: Optional[str] = Field(default=None, description="SQL Anywhere server name")
    database: Optional[str] = Field(default=None, description="Database name")
    user: Optional[str] = Field(default=None, description="User id")
    password: Optional[str] = Field(default=None, description="Password")
    owner: str = Field(default="DBA", description="Owner whose tables and procedures are migrated")
    encryption: Optional[str] = Field(default=None, description="SQL Anywhere Encryption connection parameter")
    path: Optional[str] = Field(default=None, description="Database file (sqlite only)")
    pool_size: int = Field(default=4, ge=1, description="Maximum open connections")
    connect_timeout: int = Field(default=30, ge=1, description="Seconds to wait for a connection")
    connect_retries: int = Field(default=3, ge=1, description="Attempts when opening the first connection")

    @model_validator(mode="after")
    def _check_engine_fields(self):
        if self.engine == "sqlite":
            if not self.path:
                raise ValueError("source.path is required for the sqlite engine")
        else:
            missing = [name for name in ("user", "password") if not getattr(self, name)]
            if not (self.host or self.server):
                missing.append("host or server")
            if missing:
                raise ValueError(f"source is missing: {', '.join(missing)}")
        return self


class TargetConfig(BaseModel):
    """Target engine connection (PostgreSQL, or SQLite for local runs)"""
    engine: Literal["postgres", "sqlite"] = Field(default="postgres", description="Target engine")
    host: Optional[str] = Field(default=None, description="PostgreSQL host")
    port: int = Field(default=5432, description="PostgreSQL port")
    database: Optional[str] = Field(default=None, description="Database name")
    user: Optional[str] = Field(default=None, description="User name")
    password: Optional[str] = Field(default=None, description="Password")
    schema_name: str = Field(default="public", description="Target schema")
    sslmode: Optional[str] = Field(default=None, description="libpq sslmode")
    sslrootcert: Optional[str] = Field(default=None, description="CA bundle for verify-ca/verify-full")
    managed: bool = Field(default=False, description="Target is a managed cloud instance (e.g. RDS)")
    path: Optional[str] = Field(default=None, description="Database file (sqlite only)")
    pool_size: int = Field(default=4, ge=1, description="Maximum open connections")
    connect_timeout: int = Field(default=30, ge=1, description="Seconds to wait for a connection")
    connect_retries: int = Field(default=3, ge=1, description="Attempts when opening the first connection")

    @property
    def requires_encrypted_transport(self) -> bool:
        """Managed instances and hosts reached over a public network need TLS"""
        if self.engine != "postgres":
            return False
        if self.managed:
            return True
        host = (self.host or "").strip().lower()
        if not host or host in LOCAL_HOSTS:
            return False
        try:
            address = ipaddress.ip_address(host)
        except ValueError:
            # Bare names (docker compose services) stay on the private network
            return "." in host
        return not (address.is_private or address.is_loopback)

    @model_validator(mode="after")
    def _check_engine_fields(self):
        if self.engine == "sqlite":
            if not self.path:
                raise ValueError("target.path is required for the sqlite engine")
            return self

        missing = [name for name in ("host", "database", "user") if not getattr(self, name)]
        if missing:
            raise ValueError(f"target is missing: {', '.join(missing)}")
        if self.requires_encrypted_transport and (self.sslmode or "").lower() not in SECURE_SSL_MODES:
            raise ValueError(
                f"target {self.host} requires encrypted transport; "
                f"set sslmode to one of {sorted(SECURE_SSL_MODES)}"
            )
        return self


class MigrationConfig(BaseModel):
    """Batching, concurrency and validation settings"""
    batch_size: int = Field(default=5000, gt=0, description="Rows per batch")
    workers: int = Field(default=4, ge=1, description="Tables moved concurrently inside a phase")
    max_retries: int = Field(default=3, ge=1, description="Attempts per batch before the table is halted")
    retry_wait_min: float = Field(default=1.0, ge=0, description="Minimum back-off between attempts (seconds)")
    retry_wait_max: float = Field(default=10.0, ge=0, description="Maximum back-off between attempts (seconds)")
    sample_size: int = Field(default=25, ge=1, description="Rows compared at each end of a table")
    defer_cycles: bool = Field(default=True, description="Load FK cycles without constraints, attach afterwards")
    type_overrides: Dict[str, str] = Field(default_factory=dict, description="Operator-approved type mappings")
    procedure_arguments: Dict[str, List[List[Any]]] = Field(
        default_factory=dict, description="Argument sets used to compare read-only procedure outputs"
    )
    include_tables: List[str] = Field(default_factory=list, description="Only migrate these tables")
    exclude_tables: List[str] = Field(default_factory=list, description="Never migrate these tables")
    migrate_procedures: bool = Field(default=True, description="Translate and deploy stored procedures")
    ledger_dir: str = Field(default="./migration_ledger", description="Local ledger directory")
    artifact_dir: str = Field(default="./migration_artifacts", description="Generated SQL for DBA review")

    @field_validator("type_overrides", mode="before")
    @classmethod
    def _parse_overrides(cls, value):
        if isinstance(value, str):
            overrides = {}
            for item in filter(None, (part.strip() for part in value.split(";"))):
                if ":" not in item:
                    raise ValueError(f"type override '{item}' must look like source:target")
                source, target = item.split(":", 1)
                overrides[source.strip().lower()] = target.strip()
            return overrides
        return {key.lower(): target for key, target in (value or {}).items()}

    @field_validator("procedure_arguments", mode="before")
    @classmethod
    def _parse_procedure_arguments(cls, value):
        if isinstance(value, str):
            return json.loads(value) if value.strip() else {}
        return value

    @field_validator("include_tables", "exclude_tables", mode="before")
    @classmethod
    def _parse_table_list(cls, value):
        if isinstance(value, str):
            return [name.strip() for name in value.split(",") if name.strip()]
        return value

    @model_validator(mode="after")
    def _check_waits(self):
        if self.retry_wait_max < self.retry_wait_min:
            raise ValueError("retry_wait_max must not be smaller than retry_wait_min")
        return self


class Settings(BaseModel):
    """Complete pipeline configuration"""
    source: SourceConfig
    target: TargetConfig
    migration: MigrationConfig = Field(default_factory=MigrationConfig)


def _section(values: Mapping[str, Optional[str]], prefix: str) -> Dict[str, str]:
    """Collect PREFIX_KEY=value pairs as {key: value}, skipping empty values"""
    section = {}
    for key, value in values.items():
        if key.startswith(prefix) and value not in (None, ""):
            section[key[len(prefix):].lower()] = value
    return section


def settings_from_mapping(values: Mapping[str, Optional[str]]) -> Settings:
    """Build settings from SA2PG_SOURCE_*, SA2PG_TARGET_* and SA2PG_* keys"""
    source = _section(values, f"{ENV_PREFIX}SOURCE_")
    target = _section(values, f"{ENV_PREFIX}TARGET_")
    if "schema" in target:
        target["schema_name"] = target.pop("schema")

    migration = {
        key: value
        for key, value in _section(values, ENV_PREFIX).items()
        if not key.startswith(("source_", "target_"))
    }

    try:
        return Settings(source=source, target=target, migration=migration)
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e


def load_settings(path: Union[str, Path], environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Load the parameter file, then apply SA2PG_* environment overrides"""
    param_file = Path(path)
    if not param_file.exists():
        raise ConfigurationError(f"Parameter file not found: {param_file}")

    values: Dict[str, Optional[str]] = dict(dotenv_values(param_file))
    env = os.environ if environ is None else environ
    values.update({key: value for key, value in env.items() if key.startswith(ENV_PREFIX)})

    return settings_from_mapping(values)


def apply_migration_overrides(settings: Settings, **overrides: Any) -> Settings:
    """Return a copy of `settings` with command-line values applied and re-validated"""
    values = {key: value for key, value in overrides.items() if value is not None}
    if not values:
        return settings
    try:
        migration = MigrationConfig.model_validate({**settings.migration.model_dump(), **values})
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e
    return settings.model_copy(update={"migration": migration})
