"""Bounded background execution of sealed batches."""

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, List

from stream_loader.io.loader.models import Batch
from stream_loader.utils.logging import get_logger

logger = get_logger(__name__)


class BatchScheduler:
    """Hand sealed batches to a worker pool with back-pressure.

    ``dispatch`` blocks once ``max_pending`` batches are in flight, which
    bounds the rows held in memory. Ownership of a batch moves to the worker.
    """

    def __init__(self, work: Callable[[Batch], None], max_workers: int = 4,
                 max_pending: int = 8, name: str = "stream-loader"):
        self._work = work
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._slots = threading.BoundedSemaphore(max(max_pending, 1))
        self._futures: List[Future] = []
        self._closed = False

    def dispatch(self, batch: Batch) -> None:
        if self._closed:
            raise RuntimeError("Scheduler is shut down")
        batch.sealed = True
        self._slots.acquire()
        try:
            future = self._pool.submit(self._run, batch)
        except BaseException:
            self._slots.release()
            raise
        # Completed batches that did not raise are dropped
        self._futures = [f for f in self._futures if not f.done() or f.exception() is not None]
        self._futures.append(future)
        logger.debug("batch.dispatched", batch_seq=batch.seq, rows=len(batch))

    def _run(self, batch: Batch) -> None:
        try:
            self._work(batch)
        finally:
            self._slots.release()

    @property
    def in_flight(self) -> int:
        return sum(1 for f in self._futures if not f.done())

    def drain(self) -> List[BaseException]:
        """Wait for every dispatched batch; return exceptions that escaped workers."""
        wait(self._futures)
        return [f.exception() for f in self._futures if f.exception() is not None]

    def shutdown(self) -> None:
        self._closed = True
        self._pool.shutdown(wait=True)
