"""
Operation executor: runs the load statements for staged batches.

All SQL goes through one psycopg2 connection. Statement dispatch is
serialised by ``dispatch_lock`` while encoding and uploading continue on
other workers. Each batch runs inside a savepoint so a rejected batch can be
undone without touching work already done in an enclosing transaction.
"""

import io
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

import psycopg2

from stream_loader.io.loader.coercion import kind_for_pg_type
from stream_loader.io.loader.config import LoaderConfig
from stream_loader.io.loader.encoder import decode_payload
from stream_loader.io.loader.models import (
    BatchState,
    ColumnKind,
    ErrorRecord,
    LoadConnectionError,
    LoadDataError,
    LoadResult,
    OnError,
    Operation,
    StagedFile,
    format_row,
)
from stream_loader.io.loader.sql_utils import quote_ident, quote_qualified
from stream_loader.io.loader.statements import (
    DELETED,
    INSERTED,
    MATCHED,
    UPDATED,
    build_copy_sql,
    build_create_stage_sql,
    build_describe_sql,
    build_load_statements,
    build_match_count_sql,
)
from stream_loader.io.loader.uploader import StageUploader
from stream_loader.utils.logging import get_logger

logger = get_logger(__name__)

# Row content failures; every other psycopg2.Error is infrastructure
ROW_CONTENT_ERRORS = (psycopg2.DataError, psycopg2.IntegrityError)

_BATCH_SAVEPOINT = "sl_batch"
_ROW_SAVEPOINT = "sl_row"


def _pg_message(exc: BaseException) -> str:
    message = getattr(exc, "pgerror", None) or str(exc)
    return message.strip()


class OperationExecutor:
    """Apply staged batches to the target table with the configured operation."""

    def __init__(self, connection: Any, config: LoaderConfig, uploader: StageUploader,
                 run_id: str):
        self.connection = connection
        self.config = config
        self.uploader = uploader
        self.run_id = run_id
        self.stage_table = f"sl_stage_{run_id}"[:63]
        self.dispatch_lock = threading.Lock()
        self._columns = config.target_columns
        self._keys = config.target_keys
        self._statements = build_load_statements(
            config.operation,
            config.schema_name,
            config.table,
            self.stage_table,
            self._columns,
            self._keys,
            count_unchanged_as_updated=config.count_unchanged_as_updated,
        )
        self._match_sql = build_match_count_sql(
            config.operation,
            config.schema_name,
            config.table,
            self.stage_table,
            self._columns,
            self._keys,
            count_unchanged_as_updated=config.count_unchanged_as_updated,
        )
        self._copy_sql = build_copy_sql(self.stage_table, self._columns)
        self._logger = logger.bind(run_id=run_id, table=config.table)

    # Session lifecycle

    def _run_sql(self, sql: str, what: str, params: Optional[Tuple[Any, ...]] = None) -> None:
        try:
            with self.connection.cursor() as cursor:
                cursor.execute(sql, params)
        except psycopg2.Error as e:
            self._logger.error("loader.sql.failed", step=what, error=_pg_message(e))
            raise LoadConnectionError(f"{what} failed: {_pg_message(e)}", cause=e) from e

    def describe_target(self) -> Dict[str, ColumnKind]:
        """Read column kinds of the target keyed by *input* column name.

        Raises:
            LoadConnectionError: If the table or a mapped column does not exist
        """
        try:
            with self.connection.cursor() as cursor:
                cursor.execute(build_describe_sql(), (self.config.schema_name, self.config.table))
                described = {name: data_type for name, data_type in cursor.fetchall()}
        except psycopg2.Error as e:
            raise LoadConnectionError(
                f"Cannot describe target {self.config.target}: {_pg_message(e)}", cause=e
            ) from e

        if not described:
            raise LoadConnectionError(f"Target table {self.config.target} does not exist")
        missing = [c for c in self._columns if c not in described]
        if missing:
            raise LoadConnectionError(
                f"Columns {missing} do not exist in target {self.config.target}"
            )
        return {
            source: kind_for_pg_type(described[target])
            for source, target in zip(self.config.columns, self._columns)
        }

    def begin(self) -> None:
        """Prepare the session: staging table, truncate and ``execute_before``.

        Without ``start_transaction`` the preparation is committed right away;
        with it, everything stays open until ``complete()`` or ``abort()``.
        """
        target = quote_qualified(self.config.schema_name, self.config.table)
        if self.connection.autocommit:
            self.connection.autocommit = False
        with self.dispatch_lock:
            self._run_sql(
                build_create_stage_sql(self.stage_table, target, self._columns),
                "create staging table",
            )
            if self.config.truncate_table:
                self._run_sql(f"TRUNCATE TABLE {target}", "truncate target")
            if self.config.execute_before:
                self._run_sql(self.config.execute_before, "execute_before")
            if not self.config.start_transaction:
                self._commit()
        self._logger.info(
            "loader.session.begun",
            transaction=self.config.start_transaction,
            truncated=self.config.truncate_table,
        )

    def complete(self) -> None:
        """Run ``execute_after`` and commit."""
        with self.dispatch_lock:
            if self.config.execute_after:
                self._run_sql(self.config.execute_after, "execute_after")
            self._drop_stage_table()
            self._commit()

    def abort(self) -> None:
        """Roll back whatever is still open on the connection."""
        with self.dispatch_lock:
            try:
                self.connection.rollback()
                self._drop_stage_table()
                self.connection.commit()
            except (psycopg2.Error, LoadConnectionError) as e:
                self._logger.warning("loader.rollback.failed", error=str(e))

    def _drop_stage_table(self) -> None:
        self._run_sql(f"DROP TABLE IF EXISTS {quote_ident(self.stage_table)}", "drop staging table")

    def _commit(self) -> None:
        try:
            self.connection.commit()
        except psycopg2.Error as e:
            raise LoadConnectionError(f"Commit failed: {_pg_message(e)}", cause=e) from e

    # Batch execution

    def screen(self, staged: StagedFile) -> Optional[LoadResult]:
        """Apply the on-error policy to encode-time row errors.

        Returns a terminal result when the batch must not be loaded, else None.
        """
        if not staged.row_errors:
            return None
        rows_in_batch = staged.rows_in_batch
        errors = staged.error_events()
        first = errors[0]

        if self.config.throw_on_error or self.config.on_error is OnError.ABORT_STATEMENT:
            return LoadResult(
                batch_seq=staged.batch_seq,
                state=BatchState.FAILED,
                rows_in_batch=rows_in_batch,
                rejected=rows_in_batch,
                errored_rows=len(staged.row_errors),
                errors=errors,
                fatal=self._data_error(first),
            )
        if self.config.on_error is OnError.SKIP_FILE:
            self._logger.warning(
                "batch.skipped", batch_seq=staged.batch_seq, error=first.message
            )
            return LoadResult(
                batch_seq=staged.batch_seq,
                state=BatchState.FAILED,
                rows_in_batch=rows_in_batch,
                rejected=rows_in_batch,
                errored_rows=len(staged.row_errors),
                errors=errors,
            )
        return None

    def _data_error(self, record: ErrorRecord) -> LoadDataError:
        return LoadDataError(
            f"Row {record.row_index} of batch {record.batch_seq} rejected for "
            f"{record.target}: {record.message} (row: {format_row(record.row)})",
            error_record=record,
        )

    def execute_batch(self, staged: StagedFile) -> LoadResult:
        """Load one staged file. Must be called with ``dispatch_lock`` held.

        Raises:
            LoadConnectionError: On any failure not attributable to row content
        """
        started = time.perf_counter()
        rows_in_batch = staged.rows_in_batch
        result = LoadResult(
            batch_seq=staged.batch_seq,
            state=BatchState.EXECUTING,
            rows_in_batch=rows_in_batch,
            errored_rows=len(staged.row_errors),
            errors=staged.error_events(),
        )

        if staged.row_count:
            data = decode_payload(staged, self.uploader.fetch(staged))
            try:
                with self.connection.cursor() as cursor:
                    cursor.execute(f"SAVEPOINT {_BATCH_SAVEPOINT}")
                    try:
                        counts = self._apply(cursor, data)
                    except ROW_CONTENT_ERRORS as e:
                        cursor.execute(f"ROLLBACK TO SAVEPOINT {_BATCH_SAVEPOINT}")
                        self._on_statement_rejected(cursor, staged, data, e, result)
                    else:
                        self._add_counts(result, counts, staged.row_count)
                    if result.fatal is not None:
                        cursor.execute(f"ROLLBACK TO SAVEPOINT {_BATCH_SAVEPOINT}")
                    cursor.execute(f"RELEASE SAVEPOINT {_BATCH_SAVEPOINT}")
                if not self.config.start_transaction:
                    if result.fatal is None:
                        self._commit()
                    else:
                        self.connection.rollback()
            except psycopg2.Error as e:
                self._logger.error(
                    "batch.sql.failed", batch_seq=staged.batch_seq, error=_pg_message(e)
                )
                raise LoadConnectionError(
                    f"Load statement for batch {staged.batch_seq} on {self.config.target} "
                    f"failed: {_pg_message(e)}",
                    cause=e,
                ) from e

        if result.fatal is not None:
            result.state = BatchState.FAILED
            result.rejected = rows_in_batch
            result.inserted = result.updated = result.deleted = result.ignored = 0
        elif result.state is BatchState.FAILED:
            result.rejected = rows_in_batch
        elif result.errored_rows:
            result.state = BatchState.PARTIAL
        else:
            result.state = BatchState.SUCCEEDED
        result.duration_ms = (time.perf_counter() - started) * 1000
        return result

    def _apply(self, cursor: Any, data: bytes) -> Dict[str, int]:
        """Stage ``data`` and run the operation's statements; returns rowcounts.

        ``MATCHED`` is the number of staged rows that found a target row,
        counted before any statement changes the target.
        """
        cursor.execute(f"TRUNCATE TABLE {quote_ident(self.stage_table)}")
        cursor.copy_expert(self._copy_sql, io.BytesIO(data))
        counts = {INSERTED: 0, UPDATED: 0, DELETED: 0, MATCHED: 0}
        if self._match_sql is not None:
            cursor.execute(self._match_sql)
            (matched,) = cursor.fetchone()
            counts[MATCHED] = matched or 0
        for statement in self._statements:
            cursor.execute(statement.sql)
            counts[statement.label] += max(0, cursor.rowcount or 0)
        return counts

    def _add_counts(self, result: LoadResult, counts: Dict[str, int], rows_ok: int) -> None:
        result.inserted += counts[INSERTED]
        result.updated += counts[UPDATED]
        result.deleted += counts[DELETED]
        result.rows_loaded += rows_ok
        if self.config.operation is not Operation.INSERT:
            # UPSERT inserts come from the anti-join, one per unmatched staged row
            acted_on = counts[MATCHED] + counts[INSERTED]
            result.ignored += max(0, rows_ok - acted_on)

    def _on_statement_rejected(self, cursor: Any, staged: StagedFile, data: bytes,
                               exc: BaseException, result: LoadResult) -> None:
        """Handle a row-content rejection of the whole batch statement."""
        batch_record = ErrorRecord(
            target=self.config.target,
            batch_seq=staged.batch_seq,
            row_index=None,
            message=_pg_message(exc),
            cause=exc,
        )
        on_error = self.config.on_error
        self._logger.warning(
            "batch.rejected",
            batch_seq=staged.batch_seq,
            on_error=on_error.value,
            error=batch_record.message,
        )

        if on_error is OnError.CONTINUE:
            self._isolate_rows(cursor, staged, data, result)
            return

        result.errors.append(batch_record)
        result.errored_rows = result.rows_in_batch
        result.state = BatchState.FAILED
        if on_error is OnError.ABORT_STATEMENT or self.config.throw_on_error:
            result.fatal = self._data_error(batch_record)

    def _isolate_rows(self, cursor: Any, staged: StagedFile, data: bytes,
                      result: LoadResult) -> None:
        """Replay the batch record by record to pinpoint rejected rows."""
        for encoded in staged.encoded:
            row_index = encoded.row_index
            start, end = encoded.span
            record = data[start:end]
            cursor.execute(f"SAVEPOINT {_ROW_SAVEPOINT}")
            try:
                counts = self._apply(cursor, record)
            except ROW_CONTENT_ERRORS as e:
                cursor.execute(f"ROLLBACK TO SAVEPOINT {_ROW_SAVEPOINT}")
                error = ErrorRecord(
                    target=self.config.target,
                    batch_seq=staged.batch_seq,
                    row_index=row_index,
                    message=_pg_message(e),
                    value=record.decode("utf-8", errors="replace").rstrip("\n"),
                    cause=e,
                )
                result.errors.append(error)
                result.errored_rows += 1
                if self.config.throw_on_error:
                    result.fatal = self._data_error(error)
                    return
            else:
                self._add_counts(result, counts, 1)
            finally:
                cursor.execute(f"RELEASE SAVEPOINT {_ROW_SAVEPOINT}")
