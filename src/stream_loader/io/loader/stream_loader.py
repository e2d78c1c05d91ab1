"""
Streaming bulk loader.

Rows submitted with ``submit_row`` are buffered into batches. Sealed batches
are encoded, uploaded to the staging area and applied to the target table on
background workers while the caller keeps submitting. ``finish`` drains the
pipeline and commits, or rolls back and raises the first fatal error.

Usage:
    >>> loader = StreamLoader.configure(
    ...     operation=Operation.UPSERT,
    ...     table="orders",
    ...     columns=["id", "status", "amount"],
    ...     keys=["id"],
    ...     start_transaction=True,
    ... )
    >>> loader.start()
    >>> for row in rows:
    ...     loader.submit_row(row)
    >>> summary = loader.finish()
"""

import re
import uuid
from enum import Enum
from typing import Any, Iterable, Optional, Sequence

import psycopg2

from stream_loader.config import get_settings
from stream_loader.io.loader.coercion import ValueCoercer
from stream_loader.io.loader.config import LoaderConfig, build_config
from stream_loader.io.loader.coordinator import (
    ListenerSnapshot,
    ResultCoordinator,
    ResultListener,
)
from stream_loader.io.loader.encoder import FileEncoder
from stream_loader.io.loader.executor import OperationExecutor
from stream_loader.io.loader.models import (
    Batch,
    BatchState,
    LoadConnectionError,
    LoadDataError,
    LoaderConfigError,
    LoadResult,
    StreamLoaderError,
)
from stream_loader.io.loader.pipeline import BatchScheduler
from stream_loader.io.loader.uploader import StageUploader
from stream_loader.io.stage.transport import LocalDirectoryStage, StageTransport
from stream_loader.utils.logging import get_logger

logger = get_logger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class LoaderState(str, Enum):
    NEW = "NEW"
    STARTED = "STARTED"
    FINISHED = "FINISHED"


def _approx_size(row: Sequence[Any]) -> int:
    # Rough staged size: rendered text plus one delimiter per field
    return sum(len(v) if isinstance(v, (str, bytes)) else 8 for v in row if v is not None) + len(row)


class StreamLoader:
    """Load a stream of rows into one table with one operation."""

    def __init__(
        self,
        config: LoaderConfig,
        connection: Any = None,
        connection_url: Optional[str] = None,
        stage: Optional[StageTransport] = None,
        listener: Optional[ResultListener] = None,
        run_id: Optional[str] = None,
    ):
        settings = get_settings()
        self.config = config
        self.listener = listener or ResultListener()
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.stage = stage or LocalDirectoryStage(settings.STAGE_DIR)
        self._connection = connection
        self._owns_connection = connection is None
        self._connection_url = connection_url or settings.get_database_connection_string()
        self._connect_timeout = settings.LOADER_CONNECT_TIMEOUT
        self._coordinator = ResultCoordinator(config, self.listener)
        self._state = LoaderState.NEW
        self._executor: Optional[OperationExecutor] = None
        self._encoder: Optional[FileEncoder] = None
        self._uploader: Optional[StageUploader] = None
        self._scheduler: Optional[BatchScheduler] = None
        self._batch: Optional[Batch] = None
        self._next_seq = 0
        self._logger = logger.bind(run_id=self.run_id, table=config.table)

    @classmethod
    def configure(cls, operation, table: str, columns: Sequence[str],
                  keys: Optional[Sequence[str]] = None, *, connection: Any = None,
                  connection_url: Optional[str] = None,
                  stage: Optional[StageTransport] = None,
                  listener: Optional[ResultListener] = None,
                  **options: Any) -> "StreamLoader":
        """Build a loader from keyword options (see ``LoaderConfig`` fields).

        Raises:
            LoaderConfigError: If an option is unknown or has an invalid value
        """
        config = build_config(
            operation=operation, table=table, columns=list(columns),
            keys=list(keys or []), **options
        )
        return cls(config, connection=connection, connection_url=connection_url,
                   stage=stage, listener=listener)

    # Lifecycle

    @property
    def state(self) -> LoaderState:
        return self._state

    @property
    def fatal_error(self) -> Optional[StreamLoaderError]:
        return self._coordinator.fatal

    def _connect(self) -> Any:
        if self._connection is not None:
            return self._connection
        if not self._connection_url:
            raise LoaderConfigError("No connection given and DATABASE_URL is not configured")
        try:
            self._connection = psycopg2.connect(
                self._connection_url, connect_timeout=self._connect_timeout
            )
        except psycopg2.Error as e:
            raise LoadConnectionError(f"Database connection failed: {e}", cause=e) from e
        return self._connection

    def start(self) -> None:
        """Validate the configuration and open the load session.

        Failures of the SQL layer here (missing table, ``execute_before``)
        are latched as fatal and raised by the next ``submit_row`` or by
        ``finish``; configuration errors raise immediately.

        Raises:
            LoaderConfigError: For invalid configuration or a second start
        """
        if self._state is not LoaderState.NEW:
            raise LoaderConfigError(f"Loader cannot start from state {self._state.value}")
        self.config.check()

        connection = self._connect()
        self._uploader = StageUploader(
            self.stage,
            retry_max=self.config.upload_retry_max,
            backoff_ms=self.config.upload_backoff_ms,
        )
        self._executor = OperationExecutor(connection, self.config, self._uploader, self.run_id)

        kinds = {}
        try:
            kinds = self._executor.describe_target()
            self._executor.begin()
        except LoadConnectionError as e:
            self._coordinator.fail(e)

        config = self.config.with_kinds(kinds)
        self._encoder = FileEncoder(
            columns=config.columns,
            kinds=[config.column_kinds[c] for c in config.columns],
            coercer=ValueCoercer(
                use_local_timezone=config.use_local_timezone,
                map_time_to_timestamp=config.map_time_to_timestamp,
            ),
            target=config.target,
            copy_empty_field_as_empty=config.copy_empty_field_as_empty,
        )
        self._scheduler = BatchScheduler(
            self._process_batch,
            max_workers=config.max_workers,
            max_pending=config.max_pending_batches,
            name=f"stream-loader-{self.run_id}",
        )
        self._state = LoaderState.STARTED
        self._logger.info(
            "loader.started",
            operation=config.operation.value,
            columns=config.columns,
            keys=config.keys,
            on_error=config.on_error.value,
            transaction=config.start_transaction,
        )

    def _require_started(self) -> None:
        if self._state is not LoaderState.STARTED:
            raise LoaderConfigError(f"Loader is {self._state.value}, call start() first")

    def submit_row(self, values: Iterable[Any]) -> None:
        """Queue one row; blocks only while too many batches are in flight.

        Raises:
            StreamLoaderError: The latched fatal error, if one occurred
        """
        self._require_started()
        self._coordinator.raise_if_failed()

        row = tuple(values)
        if self._batch is None:
            self._batch = Batch(seq=self._next_seq, first_row_index=self.listener.submitted)
            self._next_seq += 1
        self._batch.rows.append(row)
        self._batch.approx_bytes += _approx_size(row)
        self._coordinator.record_submitted()

        if (
            len(self._batch) >= self.config.csv_row_count_bound
            or self._batch.approx_bytes >= self.config.csv_file_size_bound
        ):
            self._seal()

    def submit_dataframe(self, df) -> int:
        """Submit every row of a pandas DataFrame in configured column order.

        NaN/NaT become None and numpy scalars are unboxed. Returns the
        number of rows submitted.
        """
        missing = [c for c in self.config.columns if c not in df.columns]
        if missing:
            raise LoaderConfigError(f"DataFrame is missing columns {missing}")
        projected = df[self.config.columns].astype(object)
        projected = projected.where(projected.notna(), None)
        count = 0
        for values in projected.to_dict(orient="split")["data"]:
            self.submit_row(values)
            count += 1
        return count

    def _seal(self) -> None:
        batch, self._batch = self._batch, None
        if batch is not None and batch.rows:
            self._scheduler.dispatch(batch)

    def finish(self) -> ListenerSnapshot:
        """Drain outstanding batches, then commit or roll back.

        Raises:
            LoadDataError: Row content failure under an abort policy or throw_on_error
            LoadConnectionError: SQL layer, staging or before/after statement failure
        """
        self._require_started()
        try:
            self._seal()
            for crash in self._scheduler.drain():
                self._coordinator.fail(
                    crash if isinstance(crash, StreamLoaderError)
                    else LoadConnectionError(f"Batch worker failed: {crash!r}", cause=crash)
                )
            self._scheduler.shutdown()
            self._coordinator.finalize(self._executor)
        finally:
            self._state = LoaderState.FINISHED
            self._close_connection()

        snapshot = self.listener.snapshot()
        self._logger.info("loader.finished", **snapshot.as_dict())
        return snapshot

    def abort(self, reason: Optional[BaseException] = None) -> None:
        """Stop the load and roll back without raising."""
        if self._state is not LoaderState.STARTED:
            return
        self._coordinator.fail(
            reason if isinstance(reason, StreamLoaderError)
            else StreamLoaderError(f"Load aborted: {reason!r}")
        )
        try:
            self.finish()
        except StreamLoaderError:
            self._logger.info("loader.aborted")

    def _close_connection(self) -> None:
        if self._owns_connection and self._connection is not None:
            try:
                self._connection.close()
            finally:
                self._connection = None

    def __enter__(self) -> "StreamLoader":
        if self._state is LoaderState.NEW:
            self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is not None:
            self.abort(exc)
        elif self._state is LoaderState.STARTED:
            self.finish()
        return False

    # Background work

    def _staged_name(self, seq: int) -> str:
        table = _UNSAFE_NAME_CHARS.sub("_", self.config.table)
        suffix = ".csv.gz" if self.config.compress_staged_file else ".csv"
        return f"{self.run_id}/{table}_{seq:06d}{suffix}"

    def _cancelled_result(self, batch: Batch) -> LoadResult:
        return LoadResult(
            batch_seq=batch.seq,
            state=BatchState.FAILED,
            rows_in_batch=len(batch),
            rejected=len(batch),
        )

    def _advance(self, batch: Batch, state: BatchState, log: Any) -> None:
        batch.state = state
        log.debug("batch.state", state=state.value)

    def _process_batch(self, batch: Batch) -> None:
        """STAGING -> UPLOADING -> EXECUTING -> terminal, on a worker thread.

        Every batch is recorded exactly once; a failure that escapes the
        executor marks the whole batch rejected and becomes the load's fatal
        error.
        """
        coordinator = self._coordinator
        log = self._logger.bind(batch_seq=batch.seq)
        if coordinator.cancelled.is_set():
            self._finish_cancelled(batch, log)
            return

        try:
            self._advance(batch, BatchState.STAGING, log)
            staged = self._encoder.encode(
                batch, self._staged_name(batch.seq), self.config.compress_staged_file
            )
            result = self._executor.screen(staged)
            if result is None:
                if staged.row_count:
                    self._advance(batch, BatchState.UPLOADING, log)
                    self._uploader.upload(staged)

                with self._executor.dispatch_lock:
                    if coordinator.cancelled.is_set():
                        self._finish_cancelled(batch, log)
                        return
                    self._advance(batch, BatchState.EXECUTING, log)
                    result = self._executor.execute_batch(staged)
                    if result.fatal is not None:
                        # Latch before releasing the lock so no later batch dispatches
                        coordinator.fail(result.fatal)
            elif result.fatal is not None:
                coordinator.fail(result.fatal)
        except StreamLoaderError as e:
            self._fail_batch(batch, e, log)
            return
        except Exception as e:
            self._fail_batch(batch, self._wrap_unexpected(batch, e), log)
            return

        self._advance(batch, result.state, log)
        coordinator.record(result)

        if staged.row_count and result.fatal is None and not self.config.preserve_staged_file:
            self._uploader.discard(staged)
        elif staged.row_count:
            log.info("stage.file.preserved", name=staged.name)

    def _finish_cancelled(self, batch: Batch, log: Any) -> None:
        self._advance(batch, BatchState.FAILED, log)
        self._coordinator.record(self._cancelled_result(batch))

    def _fail_batch(self, batch: Batch, error: StreamLoaderError, log: Any) -> None:
        self._coordinator.fail(error)
        self._finish_cancelled(batch, log)

    def _wrap_unexpected(self, batch: Batch, exc: Exception) -> StreamLoaderError:
        """Classify a failure that escaped the batch pipeline."""
        if batch.state is BatchState.STAGING:
            return LoadDataError(f"Batch {batch.seq} could not be encoded: {exc!r}")
        return LoadConnectionError(
            f"Batch {batch.seq} failed while {batch.state.value.lower()}: {exc!r}", cause=exc
        )
