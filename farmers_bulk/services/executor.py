"""
BulkExecutor -- inline and chunked execution paths for bulk operations.

Contract:
    ``run_inline()`` processes records one at a time on the calling thread.
    ``run_chunked()`` partitions records into fixed-size chunks and runs
    them on worker threads, at most ``max_concurrency`` at a time, funneling
    per-record outcomes through a ProgressAggregator.
    ``process_record()`` is the per-record logic shared by both paths.

Architecture: farmers_bulk/services.  Imports farmers_bulk.domain,
    farmers_bulk.pipeline, and the store/progress services.  Does NOT
    manage background threads for whole operations; that is the
    orchestrator's job.

Invariants enforced:
    - Each ProcessingDetail is written by exactly one worker, once.
    - Within a chunk, records are processed in input order.
    - ``continue_on_error=False`` stops only the sequential stream that
      saw the failure (the whole run inline, the owning chunk otherwise).
    - Cancellation is cooperative: checked before each chunk starts and
      between records; in-flight records finish.
    - Final status for both paths: FAILED iff successful == 0 and
      failed > 0, otherwise COMPLETED.  A CANCELLED operation stays
      CANCELLED.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Mapping, Sequence

from farmers_config.schema import BulkSettings
from farmers_kernel.domain.clock import Clock, SystemClock
from farmers_kernel.exceptions import FarmersKernelError, PipelineStageError
from farmers_kernel.logging_config import LogContext, get_logger

from farmers_bulk.domain.lifecycle import UNHANDLED_EXCEPTION, final_status
from farmers_bulk.domain.types import (
    RETRY_LINEAGE_KEY,
    BulkOperation,
    OperationStatus,
    ProcessingOptions,
    ProgressUpdate,
    RecordOutcome,
    RecordStatus,
    RunResult,
)
from farmers_bulk.pipeline.base import Pipeline, ProcessingContext
from farmers_bulk.services.progress import ProgressAggregator
from farmers_bulk.services.store import OperationStore

logger = get_logger("bulk.executor")

_SEMAPHORE_POLL_SECONDS = 0.1


class BulkExecutor:
    """Runs the record pipeline over an operation's records.

    Non-goals:
        - Does NOT create operations or detail rows (orchestrator/retry do).
        - Does NOT decide between inline and chunked (orchestrator does).
    """

    def __init__(
        self,
        store: OperationStore,
        pipeline_factory: Callable[[ProcessingOptions], Pipeline],
        settings: BulkSettings | None = None,
        clock: Clock | None = None,
    ):
        self._store = store
        self._pipeline_factory = pipeline_factory
        self._settings = settings or BulkSettings()
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Per-record
    # -------------------------------------------------------------------------

    def process_record(
        self,
        operation: BulkOperation,
        pipeline: Pipeline,
        options: ProcessingOptions,
        record_index: int,
        record: Mapping[str, Any],
    ) -> RecordOutcome:
        """Run the pipeline over one record and persist its detail."""
        start = time.monotonic()
        context = ProcessingContext(
            operation_id=operation.operation_id,
            org_id=operation.org_id,
            initiated_by=operation.initiated_by,
            record_index=record_index,
            record=dict(record),
            options=options,
            started_at=self._clock.now(),
            resume_from=frozenset(operation.metadata.get(RETRY_LINEAGE_KEY, ())),
        )

        try:
            pipeline.execute(context)
            outcome = RecordOutcome(
                record_index=record_index,
                status=RecordStatus.SUCCESS,
                farmer_id=context.lookup("farmer_id"),
                aaa_user_id=context.lookup("aaa_user_id"),
                processing_time_ms=int((time.monotonic() - start) * 1000),
            )
        except PipelineStageError as exc:
            outcome = RecordOutcome(
                record_index=record_index,
                status=RecordStatus.FAILED,
                aaa_user_id=context.lookup("aaa_user_id"),
                error_code=exc.error_code,
                error_message=exc.cause_message,
                failed_stage=exc.stage_name,
                processing_time_ms=int((time.monotonic() - start) * 1000),
            )
        except Exception as exc:
            logger.exception(
                "record_processing_crashed",
                extra={"record_index": record_index},
            )
            outcome = RecordOutcome(
                record_index=record_index,
                status=RecordStatus.FAILED,
                error_code=UNHANDLED_EXCEPTION,
                error_message=str(exc),
                processing_time_ms=int((time.monotonic() - start) * 1000),
            )

        if not outcome.succeeded:
            logger.info(
                "record_failed",
                extra={
                    "record_index": record_index,
                    "error_code": outcome.error_code,
                    "failed_stage": outcome.failed_stage,
                },
            )

        try:
            self._store.update_detail(operation.operation_id, outcome)
        except FarmersKernelError:
            logger.exception(
                "processing_detail_update_failed",
                extra={"record_index": record_index, "status": outcome.status.value},
            )
        return outcome

    # -------------------------------------------------------------------------
    # Inline path
    # -------------------------------------------------------------------------

    def run_inline(
        self,
        operation: BulkOperation,
        records: Sequence[Mapping[str, Any]],
        options: ProcessingOptions,
        cancel_event: threading.Event | None = None,
    ) -> RunResult:
        """Process records sequentially in input order."""
        cancel_event = cancel_event or threading.Event()
        start = time.monotonic()
        if not self._begin(operation):
            return self._not_started(operation, start)

        pipeline = self._pipeline_factory(options)
        every = self._settings.sync_progress_every
        processed = successful = failed = 0

        for index, record in enumerate(records):
            if cancel_event.is_set():
                break

            outcome = self.process_record(operation, pipeline, options, index, record)
            processed += 1
            if outcome.succeeded:
                successful += 1
            else:
                failed += 1

            if processed % every == 0:
                self._flush(operation, processed, successful, failed)

            if not outcome.succeeded and not options.continue_on_error:
                logger.info(
                    "inline_run_stopped_on_error",
                    extra={"record_index": index, "remaining": len(records) - index - 1},
                )
                break

        self._flush(operation, processed, successful, failed)
        return self._finish(
            operation, processed, successful, failed, start, cancel_event.is_set(),
        )

    # -------------------------------------------------------------------------
    # Chunked path
    # -------------------------------------------------------------------------

    def run_chunked(
        self,
        operation: BulkOperation,
        records: Sequence[Mapping[str, Any]],
        options: ProcessingOptions,
        cancel_event: threading.Event | None = None,
    ) -> RunResult:
        """Process fixed-size chunks with bounded parallelism."""
        cancel_event = cancel_event or threading.Event()
        start = time.monotonic()
        if not self._begin(operation):
            return self._not_started(operation, start)

        options = options.with_defaults(self._settings)
        pipeline = self._pipeline_factory(options)
        chunk_size = options.chunk_size
        chunks = [records[i:i + chunk_size] for i in range(0, len(records), chunk_size)]
        semaphore = threading.BoundedSemaphore(options.max_concurrency)
        aggregator = ProgressAggregator(
            self._store,
            operation.operation_id,
            flush_interval_seconds=self._settings.progress_flush_interval_seconds,
            capacity=self._settings.progress_queue_capacity,
        ).start()

        logger.info(
            "chunked_run_started",
            extra={
                "total_records": len(records),
                "chunks": len(chunks),
                "chunk_size": chunk_size,
                "max_concurrency": options.max_concurrency,
            },
        )

        log_context = LogContext.get_all()
        workers: list[threading.Thread] = []
        for chunk_index, chunk in enumerate(chunks):
            if not self._acquire(semaphore, cancel_event):
                logger.info(
                    "chunked_run_cancelled",
                    extra={"chunks_started": chunk_index, "chunks": len(chunks)},
                )
                break
            worker = threading.Thread(
                target=self._run_chunk,
                args=(
                    operation, pipeline, options, chunk_index, chunk_size, chunk,
                    aggregator, semaphore, cancel_event, log_context,
                ),
                name=f"bulk-chunk-{str(operation.operation_id)[:8]}-{chunk_index}",
                daemon=True,
            )
            workers.append(worker)
            worker.start()

        for worker in workers:
            worker.join()

        totals = aggregator.close()
        return self._finish(
            operation,
            totals.processed,
            totals.successful,
            totals.failed,
            start,
            cancel_event.is_set(),
        )

    def _run_chunk(
        self,
        operation: BulkOperation,
        pipeline: Pipeline,
        options: ProcessingOptions,
        chunk_index: int,
        chunk_size: int,
        chunk: Sequence[Mapping[str, Any]],
        aggregator: ProgressAggregator,
        semaphore: threading.BoundedSemaphore,
        cancel_event: threading.Event,
        log_context: dict[str, str],
    ) -> None:
        try:
            with LogContext.bind(**log_context):
                for offset, record in enumerate(chunk):
                    if cancel_event.is_set():
                        return
                    index = chunk_index * chunk_size + offset
                    outcome = self.process_record(operation, pipeline, options, index, record)
                    aggregator.publish(ProgressUpdate.for_outcome(outcome))
                    if not outcome.succeeded and not options.continue_on_error:
                        logger.info(
                            "chunk_stopped_on_error",
                            extra={"chunk_index": chunk_index, "record_index": index},
                        )
                        return
        finally:
            semaphore.release()

    @staticmethod
    def _acquire(semaphore: threading.BoundedSemaphore, cancel_event: threading.Event) -> bool:
        """Wait for a free slot; False if cancelled first."""
        while not cancel_event.is_set():
            if semaphore.acquire(timeout=_SEMAPHORE_POLL_SECONDS):
                if cancel_event.is_set():
                    semaphore.release()
                    return False
                return True
        return False

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _begin(self, operation: BulkOperation) -> bool:
        """PENDING -> PROCESSING.  False if the operation can no longer start."""
        try:
            return self._store.update_status(operation.operation_id, OperationStatus.PROCESSING)
        except FarmersKernelError:
            logger.exception("bulk_operation_start_failed")
            return False

    def _not_started(self, operation: BulkOperation, start: float) -> RunResult:
        logger.info("bulk_operation_not_started")
        try:
            status = self._store.get_by_id(operation.operation_id).status
        except FarmersKernelError:
            status = operation.status
        return RunResult(
            operation_id=operation.operation_id,
            status=status,
            processed=0,
            successful=0,
            failed=0,
            duration_ms=int((time.monotonic() - start) * 1000),
            cancelled=status == OperationStatus.CANCELLED,
        )

    def _flush(self, operation: BulkOperation, processed: int, successful: int, failed: int) -> None:
        try:
            self._store.update_progress(operation.operation_id, processed, successful, failed, 0)
        except FarmersKernelError:
            logger.exception("progress_flush_failed", extra={"processed": processed})

    def _finish(
        self,
        operation: BulkOperation,
        processed: int,
        successful: int,
        failed: int,
        start: float,
        cancelled: bool,
    ) -> RunResult:
        duration_ms = int((time.monotonic() - start) * 1000)
        status = OperationStatus.CANCELLED if cancelled else final_status(successful, failed)

        if not cancelled:
            try:
                applied = self._store.update_status(
                    operation.operation_id,
                    status,
                    error_summary=f"{failed} record(s) failed" if failed else None,
                    processing_time_ms=duration_ms,
                )
                if not applied:
                    status = self._store.get_by_id(operation.operation_id).status
                    cancelled = status == OperationStatus.CANCELLED
            except FarmersKernelError:
                logger.exception("bulk_operation_finalize_failed", extra={"status": status.value})

        logger.info(
            "bulk_operation_finished",
            extra={
                "status": status.value,
                "processed": processed,
                "successful": successful,
                "failed": failed,
                "duration_ms": duration_ms,
            },
        )
        return RunResult(
            operation_id=operation.operation_id,
            status=status,
            processed=processed,
            successful=successful,
            failed=failed,
            duration_ms=duration_ms,
            cancelled=cancelled,
        )
