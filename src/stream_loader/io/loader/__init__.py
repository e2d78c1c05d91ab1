"""
Streaming bulk loader for PostgreSQL.

Rows are buffered into staged CSV files, uploaded to a staging area and
applied to one target table with set-based statements, with per-row error
reporting and optional all-or-nothing transactions.
"""

from .config import LoaderConfig, build_config, load_loader_config
from .coordinator import ListenerSnapshot, ResultListener
from .models import (
    BatchState,
    CoercionError,
    ColumnKind,
    ErrorRecord,
    LoadConnectionError,
    LoadDataError,
    LoaderConfigError,
    LoadResult,
    OnError,
    Operation,
    StreamLoaderError,
)
from .stream_loader import LoaderState, StreamLoader

__all__ = [
    "BatchState",
    "CoercionError",
    "ColumnKind",
    "ErrorRecord",
    "ListenerSnapshot",
    "LoadConnectionError",
    "LoadDataError",
    "LoadResult",
    "LoaderConfig",
    "LoaderConfigError",
    "LoaderState",
    "OnError",
    "Operation",
    "ResultListener",
    "StreamLoader",
    "StreamLoaderError",
    "build_config",
    "load_loader_config",
]
