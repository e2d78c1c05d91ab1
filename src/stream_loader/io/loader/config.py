"""
Immutable loader configuration.

A ``LoaderConfig`` is built once (directly, from keyword arguments through
``StreamLoader.configure`` or from a YAML file) and is never mutated after
``StreamLoader.start()``. Cross-field rules are checked by ``check()``, which
``start()`` calls before any SQL runs.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from stream_loader.config import get_settings
from stream_loader.io.loader.models import (
    ColumnKind,
    LoaderConfigError,
    OnError,
    Operation,
)


def _setting(name: str):
    return lambda: getattr(get_settings(), name)


class LoaderConfig(BaseModel):
    """Schema for one loader instance: one target table, one operation."""

    model_config = ConfigDict(frozen=True, extra="forbid", use_enum_values=False)

    operation: Operation = Field(Operation.INSERT, description="Load statement kind")
    table: str = Field(..., min_length=1, description="Target table name")
    schema_name: Optional[str] = Field(None, description="Target schema")
    database: Optional[str] = Field(
        None, description="Target database name, used in error targets and logs"
    )
    columns: List[str] = Field(..., min_length=1, description="Input column names")
    column_targets: Dict[str, str] = Field(
        default_factory=dict, description="Input to target column renames"
    )
    keys: List[str] = Field(default_factory=list, description="Match key columns")
    column_kinds: Dict[str, ColumnKind] = Field(
        default_factory=dict, description="Explicit kinds; otherwise described"
    )

    on_error: OnError = Field(OnError.CONTINUE, description="Row error policy")
    throw_on_error: bool = Field(
        False, description="Escalate the first recorded error to a fatal LoadDataError"
    )
    start_transaction: bool = Field(
        False, description="Wrap the whole load in a single transaction"
    )
    truncate_table: bool = Field(False, description="Truncate before loading")

    csv_file_size_bound: int = Field(
        default_factory=_setting("LOADER_CSV_FILE_SIZE_BOUND"), gt=0
    )
    csv_row_count_bound: int = Field(
        default_factory=_setting("LOADER_CSV_ROW_COUNT_BOUND"), gt=0
    )
    max_workers: int = Field(default_factory=_setting("LOADER_MAX_WORKERS"), gt=0)
    max_pending_batches: int = Field(
        default_factory=_setting("LOADER_MAX_PENDING_BATCHES"), gt=0
    )
    upload_retry_max: int = Field(
        default_factory=_setting("LOADER_UPLOAD_RETRY_MAX"), gt=0
    )
    upload_backoff_ms: int = Field(
        default_factory=_setting("LOADER_UPLOAD_BACKOFF_MS"), ge=0
    )

    use_local_timezone: bool = Field(
        False, description="Render instants in the process default timezone"
    )
    map_time_to_timestamp: bool = Field(
        False, description="Accept time-of-day values for timestamp columns"
    )
    copy_empty_field_as_empty: bool = Field(
        False, description="Stage None as an empty string instead of NULL"
    )
    preserve_staged_file: bool = Field(
        False, description="Keep staged objects after a successful load"
    )
    compress_staged_file: bool = Field(False, description="gzip staged payloads")

    execute_before: Optional[str] = Field(None, description="SQL run in start()")
    execute_after: Optional[str] = Field(None, description="SQL run in finish()")

    processed_includes_errors: bool = Field(
        True, description="Count rows skipped under CONTINUE as processed"
    )
    count_unchanged_as_updated: bool = Field(
        True, description="Count matched rows whose values did not change as updated"
    )

    @property
    def target_columns(self) -> List[str]:
        return [self.column_targets.get(c, c) for c in self.columns]

    @property
    def target_keys(self) -> List[str]:
        return [self.column_targets.get(k, k) for k in self.keys]

    @property
    def target(self) -> str:
        """Qualified identifier reported in error records."""
        parts = [p for p in (self.database, self.schema_name, self.table) if p]
        return ".".join(parts)

    def check(self) -> "LoaderConfig":
        """Validate cross-field rules.

        Raises:
            LoaderConfigError: When the combination of options cannot be loaded
        """
        if len(set(self.columns)) != len(self.columns):
            raise LoaderConfigError(f"Duplicate column names in {self.columns}")
        unknown_renames = set(self.column_targets) - set(self.columns)
        if unknown_renames:
            raise LoaderConfigError(
                f"column_targets references unmapped columns: {sorted(unknown_renames)}"
            )
        if len(set(self.target_columns)) != len(self.target_columns):
            raise LoaderConfigError("column_targets maps two inputs to one column")

        if self.operation.requires_keys:
            if not self.keys:
                raise LoaderConfigError(
                    f"{self.operation.value} requires at least one key column"
                )
            missing = [k for k in self.keys if k not in self.columns]
            if missing:
                raise LoaderConfigError(
                    f"Keys {missing} are not part of the mapped columns {self.columns}"
                )
        if self.operation is Operation.MODIFY and not set(self.columns) - set(self.keys):
            raise LoaderConfigError("MODIFY requires at least one non-key column to update")
        if self.truncate_table and self.operation is not Operation.INSERT:
            raise LoaderConfigError(
                f"truncate_table is only valid with INSERT, not {self.operation.value}"
            )
        unknown_kinds = set(self.column_kinds) - set(self.columns)
        if unknown_kinds:
            raise LoaderConfigError(
                f"column_kinds references unmapped columns: {sorted(unknown_kinds)}"
            )
        return self

    def with_kinds(self, kinds: Dict[str, ColumnKind]) -> "LoaderConfig":
        """Return a copy whose ``column_kinds`` is filled in for every column."""
        merged = {c: self.column_kinds.get(c, kinds.get(c, ColumnKind.STRING))
                  for c in self.columns}
        return self.model_copy(update={"column_kinds": merged})


def build_config(**options: Any) -> LoaderConfig:
    """Build a config from keyword options, converting pydantic failures."""
    try:
        return LoaderConfig(**options)
    except ValidationError as e:
        raise LoaderConfigError(f"Invalid loader configuration: {e}") from e


def load_loader_config(path: str, **overrides: Any) -> LoaderConfig:
    """Load a loader configuration from a YAML mapping.

    Raises:
        LoaderConfigError: If the file is missing, is not valid YAML or fails
            schema validation
    """
    config_file = Path(path)
    if not config_file.exists():
        raise LoaderConfigError(f"Configuration file not found: {path}")

    try:
        with open(config_file, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise LoaderConfigError(f"Invalid YAML in configuration file: {e}") from e

    if not isinstance(data, dict):
        raise LoaderConfigError(f"{path} must contain a mapping at top level")
    data.update({k: v for k, v in overrides.items() if v is not None})
    return build_config(**data)
