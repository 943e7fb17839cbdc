"""
ProgressAggregator -- single-consumer progress funnel for the chunked path.

Contract:
    Chunk workers ``publish()`` one ``ProgressUpdate`` per record into a
    bounded queue.  One consumer thread drains the queue, keeps running
    totals, and flushes them to the OperationStore on whichever comes
    first: the flush interval elapsing, or ``close()``.

Invariants enforced:
    - Exactly one thread writes aggregate counts for the operation while
      the aggregator is open.
    - ``close()`` performs a final flush after every published update has
      been applied, so the stored totals equal the sum of all updates.
    - Flush failures are logged and swallowed; progress is best-effort.
"""

from __future__ import annotations

import queue
import threading
import time
from uuid import UUID

from farmers_kernel.logging_config import LogContext, get_logger

from farmers_bulk.domain.types import ProgressUpdate
from farmers_bulk.services.store import OperationStore

logger = get_logger("bulk.progress")

_CLOSE = object()


class ProgressAggregator:
    """Bounded-queue progress aggregator with periodic flush."""

    def __init__(
        self,
        store: OperationStore,
        operation_id: UUID,
        *,
        flush_interval_seconds: float = 1.0,
        capacity: int = 1000,
    ):
        self._store = store
        self._operation_id = operation_id
        self._flush_interval = flush_interval_seconds
        self._queue: queue.Queue = queue.Queue(maxsize=capacity)
        self._lock = threading.Lock()
        self._totals = ProgressUpdate()
        self._flush_count = 0
        self._thread: threading.Thread | None = None
        self._closed = False

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    def start(self) -> ProgressAggregator:
        if self._thread is not None:
            raise RuntimeError("ProgressAggregator already started")
        self._thread = threading.Thread(
            target=self._consume,
            name=f"bulk-progress-{str(self._operation_id)[:8]}",
            daemon=True,
        )
        self._thread.start()
        return self

    def publish(self, update: ProgressUpdate) -> None:
        """Enqueue one update.  Blocks while the queue is full."""
        if self._closed:
            raise RuntimeError("ProgressAggregator is closed")
        self._queue.put(update)

    def close(self, timeout: float | None = None) -> ProgressUpdate:
        """Stop accepting updates, drain, flush, and return the totals."""
        if not self._closed:
            self._closed = True
            self._queue.put(_CLOSE)
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        return self.totals

    def __enter__(self) -> ProgressAggregator:
        return self.start()

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def totals(self) -> ProgressUpdate:
        with self._lock:
            return self._totals

    @property
    def flush_count(self) -> int:
        return self._flush_count

    # -------------------------------------------------------------------------
    # Consumer side
    # -------------------------------------------------------------------------

    def _consume(self) -> None:
        with LogContext.bind(operation_id=str(self._operation_id)):
            next_flush = time.monotonic() + self._flush_interval
            dirty = False
            while True:
                timeout = max(0.0, next_flush - time.monotonic())
                try:
                    item = self._queue.get(timeout=timeout)
                except queue.Empty:
                    item = None

                if item is _CLOSE:
                    break
                if item is not None:
                    self._apply(item)
                    dirty = True

                if time.monotonic() >= next_flush:
                    if dirty:
                        self._flush()
                        dirty = False
                    next_flush = time.monotonic() + self._flush_interval

            self._flush()

    def _apply(self, update: ProgressUpdate) -> None:
        with self._lock:
            t = self._totals
            self._totals = ProgressUpdate(
                processed=t.processed + update.processed,
                successful=t.successful + update.successful,
                failed=t.failed + update.failed,
                skipped=t.skipped + update.skipped,
            )

    def _flush(self) -> None:
        totals = self.totals
        try:
            self._store.update_progress(
                self._operation_id,
                totals.processed,
                totals.successful,
                totals.failed,
                totals.skipped,
            )
            self._flush_count += 1
        except Exception:
            logger.exception(
                "progress_flush_failed",
                extra={"processed": totals.processed},
            )
