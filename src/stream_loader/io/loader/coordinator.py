"""
Result coordination: aggregate counters, fatal error latch, finalisation.

The coordinator is the only writer of listener counters. Batches complete on
worker threads in any order; updates are applied under one lock and each
batch is counted at most once.
"""

import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Set

from stream_loader.io.loader.config import LoaderConfig
from stream_loader.io.loader.models import (
    BatchState,
    ErrorRecord,
    LoadResult,
    StreamLoaderError,
)
from stream_loader.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ListenerSnapshot:
    """Point-in-time copy of the listener counters."""

    submitted: int
    processed: int
    inserted: int
    updated: int
    deleted: int
    ignored: int
    rejected: int
    error_count: int
    error_record_count: int

    def as_dict(self) -> dict:
        return dict(self.__dict__)


class ResultListener:
    """Caller-facing view of a load's progress.

    ``updated`` reports updated and inserted rows together; ``inserted`` is
    the inserted share of it. ``error_count`` counts error events (a row with
    two bad values contributes two), ``error_record_count`` counts batches that
    produced at least one error.

    Callbacks run on worker threads after the counters were updated.
    """

    def __init__(
        self,
        on_error: Optional[Callable[[ErrorRecord], None]] = None,
        on_batch: Optional[Callable[[LoadResult], None]] = None,
    ):
        self.on_error = on_error
        self.on_batch = on_batch
        self._lock = threading.Lock()
        self._submitted = 0
        self._processed = 0
        self._inserted = 0
        self._updated = 0
        self._deleted = 0
        self._ignored = 0
        self._rejected = 0
        self._error_record_count = 0
        self._errors: List[ErrorRecord] = []
        self._batch_results: List[LoadResult] = []

    @property
    def submitted(self) -> int:
        return self._submitted

    @property
    def processed(self) -> int:
        return self._processed

    @property
    def inserted(self) -> int:
        return self._inserted

    @property
    def updated(self) -> int:
        return self._updated + self._inserted

    @property
    def deleted(self) -> int:
        return self._deleted

    @property
    def ignored(self) -> int:
        return self._ignored

    @property
    def rejected(self) -> int:
        return self._rejected

    @property
    def error_count(self) -> int:
        return len(self._errors)

    @property
    def error_record_count(self) -> int:
        return self._error_record_count

    @property
    def errors(self) -> List[ErrorRecord]:
        with self._lock:
            return list(self._errors)

    @property
    def batch_results(self) -> List[LoadResult]:
        with self._lock:
            return list(self._batch_results)

    def snapshot(self) -> ListenerSnapshot:
        with self._lock:
            return ListenerSnapshot(
                submitted=self._submitted,
                processed=self._processed,
                inserted=self._inserted,
                updated=self._updated + self._inserted,
                deleted=self._deleted,
                ignored=self._ignored,
                rejected=self._rejected,
                error_count=len(self._errors),
                error_record_count=self._error_record_count,
            )


class ResultCoordinator:
    """Owns the listener state and the first fatal error of a load."""

    def __init__(self, config: LoaderConfig, listener: ResultListener):
        self.config = config
        self.listener = listener
        self.cancelled = threading.Event()
        self._fatal: Optional[StreamLoaderError] = None
        self._counted: Set[int] = set()

    @property
    def fatal(self) -> Optional[StreamLoaderError]:
        return self._fatal

    def raise_if_failed(self) -> None:
        if self._fatal is not None:
            raise self._fatal

    def fail(self, error: StreamLoaderError) -> None:
        """Latch the first fatal error and stop further load statements."""
        listener = self.listener
        with listener._lock:
            first = self._fatal is None
            if first:
                self._fatal = error
        self.cancelled.set()
        if first:
            logger.error(
                "loader.fatal",
                table=self.config.table,
                error_type=type(error).__name__,
                error=str(error),
            )

    def record_submitted(self, count: int = 1) -> None:
        with self.listener._lock:
            self.listener._submitted += count

    def record(self, result: LoadResult) -> None:
        """Fold a terminal batch result into the counters exactly once."""
        if not result.state.is_terminal:
            raise ValueError(f"Batch {result.batch_seq} is not terminal: {result.state}")

        listener = self.listener
        with listener._lock:
            if result.batch_seq in self._counted:
                return
            self._counted.add(result.batch_seq)

            if result.state is BatchState.FAILED:
                listener._rejected += result.rows_in_batch
            else:
                listener._processed += result.rows_loaded - result.ignored
                listener._ignored += result.ignored
                listener._inserted += result.inserted
                listener._updated += result.updated
                listener._deleted += result.deleted
                if self.config.processed_includes_errors:
                    listener._processed += result.errored_rows
                else:
                    listener._rejected += result.errored_rows

            if result.errors:
                listener._errors.extend(result.errors)
                listener._error_record_count += 1
            listener._batch_results.append(result)

        logger.info(
            "batch.completed",
            table=self.config.table,
            batch_seq=result.batch_seq,
            state=result.state.value,
            rows=result.rows_in_batch,
            inserted=result.inserted,
            updated=result.updated,
            deleted=result.deleted,
            errors=len(result.errors),
            duration_ms=round(result.duration_ms, 3),
        )

        if result.fatal is not None:
            self.fail(result.fatal)

        if listener.on_error is not None:
            for error in result.errors:
                listener.on_error(error)
        if listener.on_batch is not None:
            listener.on_batch(result)

    def finalize(self, executor) -> None:
        """Commit when every batch succeeded, otherwise roll back and raise."""
        if self._fatal is None:
            try:
                executor.complete()
            except StreamLoaderError as e:
                self.fail(e)

        if self._fatal is not None:
            executor.abort()
            logger.warning(
                "loader.rolled_back",
                table=self.config.table,
                transaction=self.config.start_transaction,
            )
            raise self._fatal

        logger.info("loader.committed", table=self.config.table)
