"""Value types, outcomes and the exception taxonomy of the stream loader."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple, Union


class Operation(str, Enum):
    """Set-based statement applied to each staged batch."""

    INSERT = "INSERT"
    UPSERT = "UPSERT"
    MODIFY = "MODIFY"
    DELETE = "DELETE"

    @property
    def requires_keys(self) -> bool:
        return self is not Operation.INSERT


class OnError(str, Enum):
    """How a batch reacts to rows whose content cannot be loaded."""

    CONTINUE = "CONTINUE"
    SKIP_FILE = "SKIP_FILE"
    ABORT_STATEMENT = "ABORT_STATEMENT"


class ColumnKind(str, Enum):
    """Canonical value kind of a target column."""

    INTEGER = "INTEGER"
    NUMERIC = "NUMERIC"
    STRING = "STRING"
    BOOLEAN = "BOOLEAN"
    DATE = "DATE"
    TIME = "TIME"
    TIMESTAMP = "TIMESTAMP"
    TIMESTAMP_TZ = "TIMESTAMP_TZ"
    JSON = "JSON"


class BatchState(str, Enum):
    """Lifecycle of one batch: STAGING -> UPLOADING -> EXECUTING -> terminal."""

    STAGING = "STAGING"
    UPLOADING = "UPLOADING"
    EXECUTING = "EXECUTING"
    SUCCEEDED = "SUCCEEDED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchState.SUCCEEDED, BatchState.PARTIAL, BatchState.FAILED)


class StreamLoaderError(Exception):
    """Base class for every error raised by the stream loader."""


class LoaderConfigError(StreamLoaderError, ValueError):
    """Raised for invalid configuration or out-of-order lifecycle calls."""


class CoercionError(StreamLoaderError, TypeError):
    """Raised when a value cannot be rendered for its target column."""

    def __init__(self, message: str, value: Any = None, column: Optional[str] = None,
                 kind: Optional[ColumnKind] = None):
        super().__init__(message)
        self.value = value
        self.column = column
        self.kind = kind


@dataclass(frozen=True)
class ErrorRecord:
    """One reported error event for a submitted row.

    Attributes:
        target: Qualified target identifier the row was destined for
        batch_seq: Sequence number of the batch holding the row
        row_index: 0-indexed submission index across the whole load
        column: Offending column, when the error is column-scoped
        value: Offending value, when known
        row: The full submitted row, when known
        message: Human readable description
        cause: The underlying exception
    """

    target: str
    batch_seq: int
    row_index: Optional[int]
    message: str
    column: Optional[str] = None
    value: Any = None
    row: Optional[Tuple[Any, ...]] = None
    cause: Optional[BaseException] = None


class LoadDataError(StreamLoaderError):
    """Row-content failure escalated to a fatal error."""

    def __init__(self, message: str, error_record: Optional[ErrorRecord] = None):
        super().__init__(message)
        self.error_record = error_record


class LoadConnectionError(StreamLoaderError, ConnectionError):
    """Infrastructure failure: SQL layer, staging transport, before/after SQL."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


@dataclass(frozen=True)
class RowOk:
    """Row encoded into its staged file at ``span`` of the uncompressed payload."""

    row_index: int
    span: Tuple[int, int]


@dataclass(frozen=True)
class RowError:
    """Row excluded from its staged file; the load goes on.

    ``errors`` holds one event per failing value, ``report`` the row-level
    event recording the exclusion itself.
    """

    row_index: int
    errors: Tuple[ErrorRecord, ...]
    report: Optional[ErrorRecord] = None

    @property
    def events(self) -> Tuple[ErrorRecord, ...]:
        if self.report is None:
            return self.errors
        return self.errors + (self.report,)


RowOutcome = Union[RowOk, RowError]


@dataclass
class Batch:
    """Bounded group of rows staged and loaded as one unit.

    Ownership moves to the worker once sealed; only the worker advances
    ``state`` afterwards.
    """

    seq: int
    first_row_index: int
    rows: List[Tuple[Any, ...]] = field(default_factory=list)
    approx_bytes: int = 0
    sealed: bool = False
    state: BatchState = BatchState.STAGING

    def __len__(self) -> int:
        return len(self.rows)

    def row_index(self, position: int) -> int:
        return self.first_row_index + position


@dataclass
class StagedFile:
    """Encoded payload of one batch and its location in the staging area.

    ``outcomes`` holds one ``RowOk`` or ``RowError`` per submitted row, in
    submission order.
    """

    batch_seq: int
    name: str
    payload: bytes
    outcomes: List[RowOutcome] = field(default_factory=list)
    compressed: bool = False

    @property
    def encoded(self) -> List[RowOk]:
        return [o for o in self.outcomes if isinstance(o, RowOk)]

    @property
    def row_errors(self) -> List[RowError]:
        return [o for o in self.outcomes if isinstance(o, RowError)]

    @property
    def row_indexes(self) -> List[int]:
        return [o.row_index for o in self.encoded]

    @property
    def row_count(self) -> int:
        return len(self.encoded)

    @property
    def rows_in_batch(self) -> int:
        return len(self.outcomes)

    def error_events(self) -> List[ErrorRecord]:
        return [event for row_error in self.row_errors for event in row_error.events]

    def record(self, data: bytes, position: int) -> bytes:
        """Slice the ``position``-th encoded record out of the uncompressed payload."""
        start, end = self.encoded[position].span
        return data[start:end]


@dataclass
class LoadResult:
    """Per-batch outcome reported by the operation executor."""

    batch_seq: int
    state: BatchState
    rows_in_batch: int = 0
    rows_loaded: int = 0
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    ignored: int = 0
    rejected: int = 0
    errored_rows: int = 0
    errors: List[ErrorRecord] = field(default_factory=list)
    duration_ms: float = 0.0
    fatal: Optional[StreamLoaderError] = None

    @property
    def affected(self) -> int:
        return self.inserted + self.updated + self.deleted


def format_row(row: Optional[Sequence[Any]]) -> str:
    """Render a row for error messages without dumping huge payloads."""
    if row is None:
        return "<unknown row>"
    rendered = ", ".join(repr(v) for v in row)
    return rendered if len(rendered) <= 500 else rendered[:497] + "..."
