"""
BulkOrchestrator -- public entrypoint of the bulk registration engine.

Contract:
    - ``submit()`` validates the request, persists the operation and its
      processing details, and launches the inline or chunked path on a
      background thread.  Returns at once with the operation id and the
      status/result URLs (or a ValidationSummary for validate-only).
    - ``get_status()`` returns the latest flushed progress with an ETA.
    - ``cancel()`` stops a non-terminal operation cooperatively.
    - ``retry_failed()`` spawns a retry operation for transient failures.
    - ``wait()`` / ``shutdown()`` join background runs.
    - ``from_session_factory()`` wires every dependency.

Architecture: farmers_bulk (top-level).  The only place that starts
    operation threads.

Invariants enforced:
    - Empty input is rejected before anything is persisted.
    - Operation creation failure is fatal; detail-row creation failure is
      logged and the operation still runs.
    - Mode: ``mode == "sync"`` or ``len(records) <= max_sync_records``
      runs inline, otherwise chunked.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Mapping, Sequence
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from farmers_config.schema import BulkSettings
from farmers_kernel.clients.identity import IdentityAuthority
from farmers_kernel.domain.clock import Clock, SystemClock
from farmers_kernel.exceptions import (
    EmptyInputError,
    FarmersKernelError,
    OperationNotCancellableError,
    UnsupportedFormatError,
)
from farmers_kernel.logging_config import LogContext, get_logger
from farmers_kernel.services.farmer_registry import FarmerRegistry

from farmers_bulk.domain.lifecycle import can_retry, is_terminal
from farmers_bulk.domain.types import (
    BulkOperation,
    InputFormat,
    NewDetail,
    OperationHandle,
    OperationStatus,
    OperationStatusView,
    ProcessingDetail,
    ProcessingMode,
    ProcessingOptions,
    ValidationSummary,
)
from farmers_bulk.domain.validation import validate_batch
from farmers_bulk.pipeline.builder import PipelineFactory
from farmers_bulk.services.executor import BulkExecutor
from farmers_bulk.services.retry import RetryService
from farmers_bulk.services.store import OperationStore, SqlOperationStore

logger = get_logger("bulk.orchestrator")

_VALID_MODES = (None, "sync", "async")


@dataclass
class _Run:
    thread: threading.Thread
    cancel_event: threading.Event


class BulkOrchestrator:
    """Drives bulk operations from submission to completion.

    Non-goals:
        - Does NOT parse files; records arrive as mappings.
        - Does NOT check caller permissions.
    """

    def __init__(
        self,
        store: OperationStore,
        executor: BulkExecutor,
        retry_service: RetryService,
        settings: BulkSettings | None = None,
        clock: Clock | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._executor = executor
        self._retry = retry_service
        self._settings = settings or BulkSettings()
        self._clock = clock or SystemClock()
        self._sleep = sleep
        self._runs: dict[UUID, _Run] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_session_factory(
        cls,
        session_factory: Callable[[], Session],
        authority: IdentityAuthority,
        settings: BulkSettings | None = None,
        clock: Clock | None = None,
    ) -> BulkOrchestrator:
        """Create a fully wired orchestrator."""
        settings = settings or BulkSettings()
        clock = clock or SystemClock()
        registry = FarmerRegistry(session_factory, clock=clock)
        store = SqlOperationStore(session_factory, clock=clock)
        executor = BulkExecutor(
            store,
            PipelineFactory(authority, registry, settings),
            settings=settings,
            clock=clock,
        )
        return cls(
            store,
            executor,
            RetryService(store, settings=settings, clock=clock),
            settings=settings,
            clock=clock,
        )

    # -------------------------------------------------------------------------
    # Submit
    # -------------------------------------------------------------------------

    def submit(
        self,
        org_id: str,
        initiated_by: str,
        input_format: InputFormat | str,
        records: Sequence[Mapping[str, Any]],
        options: ProcessingOptions | None = None,
    ) -> OperationHandle | ValidationSummary:
        """Accept a bulk submission.

        Raises:
            EmptyInputError: ``records`` is empty.
            UnsupportedFormatError: ``input_format`` is not CSV, EXCEL or JSON.
            ValueError: ``options.mode`` is not "sync", "async" or None.
            OperationStoreError: the operation row could not be created.
        """
        if not records:
            raise EmptyInputError()
        fmt = _parse_format(input_format)
        options = (options or ProcessingOptions()).with_defaults(self._settings)
        if options.mode not in _VALID_MODES:
            raise ValueError(f"Unknown processing mode: {options.mode!r}")

        if options.validate_only:
            summary = validate_batch(records)
            logger.info(
                "bulk_validation_completed",
                extra={
                    "org_id": org_id,
                    "total_records": summary.total_records,
                    "invalid_records": summary.invalid_records,
                },
            )
            return summary

        if options.mode == "sync" or len(records) <= self._settings.max_sync_records:
            mode = ProcessingMode.SYNC
        else:
            mode = ProcessingMode.ASYNC

        operation = self._store.create_operation(
            BulkOperation(
                operation_id=uuid4(),
                org_id=org_id,
                initiated_by=initiated_by,
                input_format=fmt,
                processing_mode=mode,
                status=OperationStatus.PENDING,
                total_records=len(records),
                options=options.to_dict(),
                metadata={"submitted_at": self._clock.isoformat()},
            )
        )

        try:
            self._store.create_details_batch(
                operation.operation_id,
                [
                    NewDetail(record_index=i, input_data=dict(record))
                    for i, record in enumerate(records)
                ],
            )
        except FarmersKernelError:
            logger.exception(
                "processing_details_create_failed",
                extra={"operation_id": str(operation.operation_id)},
            )

        self._launch(operation, records, options)

        if (
            mode == ProcessingMode.SYNC
            and len(records) <= self._settings.sync_grace_threshold
            and self._settings.sync_grace_period_seconds > 0
        ):
            self._sleep(self._settings.sync_grace_period_seconds)

        return self._handle(operation)

    # -------------------------------------------------------------------------
    # Status / details
    # -------------------------------------------------------------------------

    def get_status(self, operation_id: UUID) -> OperationStatusView:
        operation = self._store.get_by_id(operation_id)
        return OperationStatusView(
            operation_id=operation.operation_id,
            status=operation.status,
            total_records=operation.total_records,
            processed_records=operation.processed_records,
            successful_records=operation.successful_records,
            failed_records=operation.failed_records,
            skipped_records=operation.skipped_records,
            progress_percentage=round(operation.progress_percentage, 2),
            can_retry=can_retry(operation),
            estimated_completion=self._estimate_completion(operation),
            started_at=operation.started_at,
            completed_at=operation.completed_at,
            error_summary=operation.error_summary,
            result_url=operation.result_file_url or self._result_url(operation.operation_id),
            metadata=dict(operation.metadata),
        )

    def get_details(self, operation_id: UUID) -> tuple[ProcessingDetail, ...]:
        self._store.get_by_id(operation_id)
        return self._store.get_details_by_operation(operation_id)

    def _estimate_completion(self, operation: BulkOperation):
        if (
            operation.status != OperationStatus.PROCESSING
            or operation.processed_records <= 0
            or operation.started_at is None
        ):
            return None
        now = self._clock.now()
        elapsed = (now - operation.started_at).total_seconds()
        remaining = operation.total_records - operation.processed_records
        if elapsed <= 0 or remaining <= 0:
            return now
        rate = operation.processed_records / elapsed
        return now + timedelta(seconds=remaining / rate)

    # -------------------------------------------------------------------------
    # Cancel
    # -------------------------------------------------------------------------

    def cancel(self, operation_id: UUID, reason: str = "cancelled by user") -> BulkOperation:
        """Cancel a PENDING or PROCESSING operation.

        In-flight records finish; no new chunk or record starts afterwards.

        Raises:
            BulkOperationNotFoundError: unknown operation id.
            OperationNotCancellableError: operation already terminal.
        """
        operation = self._store.get_by_id(operation_id)
        if is_terminal(operation.status):
            raise OperationNotCancellableError(str(operation_id), operation.status.value)

        applied = self._store.update_status(
            operation_id, OperationStatus.CANCELLED, error_summary=f"Cancelled: {reason}",
        )
        if not applied:
            current = self._store.get_by_id(operation_id)
            raise OperationNotCancellableError(str(operation_id), current.status.value)

        with self._lock:
            run = self._runs.get(operation_id)
        if run is not None:
            run.cancel_event.set()

        logger.info(
            "bulk_operation_cancelled",
            extra={"operation_id": str(operation_id), "reason": reason},
        )
        return self._store.get_by_id(operation_id)

    # -------------------------------------------------------------------------
    # Retry
    # -------------------------------------------------------------------------

    def retry_failed(
        self,
        operation_id: UUID,
        initiated_by: str | None = None,
        reason: str = "manual retry",
    ) -> OperationHandle:
        """Retry the transient failures of a finished operation.

        Raises:
            NotRetryableError: operation is not terminal.
            NoRetryableRecordsError: no FAILED record is eligible.
        """
        retry_op, records = self._retry.create_retry_operation(
            operation_id, initiated_by=initiated_by, reason=reason,
        )
        options = ProcessingOptions.from_dict(retry_op.options).with_defaults(self._settings)
        self._launch(retry_op, records, options)
        return self._handle(retry_op)

    # -------------------------------------------------------------------------
    # Background runs
    # -------------------------------------------------------------------------

    def wait(self, operation_id: UUID, timeout: float | None = None) -> BulkOperation:
        """Block until the operation's background run finishes (or timeout)."""
        with self._lock:
            run = self._runs.get(operation_id)
        if run is not None:
            run.thread.join(timeout=timeout)
        return self._store.get_by_id(operation_id)

    def is_running(self, operation_id: UUID) -> bool:
        with self._lock:
            run = self._runs.get(operation_id)
        return run is not None and run.thread.is_alive()

    def shutdown(self, timeout: float = 30.0) -> None:
        """Cancel every running operation and wait for the threads to exit."""
        with self._lock:
            runs = dict(self._runs)
        for operation_id, run in runs.items():
            if run.thread.is_alive():
                try:
                    self.cancel(operation_id, reason="shutdown")
                except FarmersKernelError:
                    run.cancel_event.set()
        deadline = time.monotonic() + timeout
        for run in runs.values():
            run.thread.join(timeout=max(0.0, deadline - time.monotonic()))
        logger.info("bulk_orchestrator_shutdown", extra={"runs": len(runs)})

    def _launch(
        self,
        operation: BulkOperation,
        records: Sequence[Mapping[str, Any]],
        options: ProcessingOptions,
    ) -> None:
        run_inline = (
            operation.processing_mode == ProcessingMode.SYNC
            or options.mode == "sync"
            or len(records) <= self._settings.max_sync_records
        )
        cancel_event = threading.Event()
        thread = threading.Thread(
            target=self._run,
            args=(operation, list(records), options, cancel_event, run_inline),
            name=f"bulk-op-{str(operation.operation_id)[:8]}",
            daemon=True,
        )
        with self._lock:
            self._runs = {
                op_id: run for op_id, run in self._runs.items() if run.thread.is_alive()
            }
            self._runs[operation.operation_id] = _Run(thread, cancel_event)
        thread.start()

    def _run(
        self,
        operation: BulkOperation,
        records: list[Mapping[str, Any]],
        options: ProcessingOptions,
        cancel_event: threading.Event,
        run_inline: bool,
    ) -> None:
        with LogContext.bind(
            operation_id=str(operation.operation_id),
            org_id=operation.org_id,
            actor_id=operation.initiated_by,
        ):
            try:
                if run_inline:
                    self._executor.run_inline(operation, records, options, cancel_event)
                else:
                    self._executor.run_chunked(operation, records, options, cancel_event)
            except Exception as exc:
                logger.exception("bulk_operation_run_crashed")
                try:
                    # PENDING cannot go straight to FAILED
                    self._store.update_status(operation.operation_id, OperationStatus.PROCESSING)
                    self._store.update_status(
                        operation.operation_id,
                        OperationStatus.FAILED,
                        error_summary=f"processing crashed: {exc}",
                    )
                except FarmersKernelError:
                    logger.exception("bulk_operation_finalize_failed")

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _handle(self, operation: BulkOperation) -> OperationHandle:
        return OperationHandle(
            operation_id=operation.operation_id,
            status=operation.status,
            processing_mode=operation.processing_mode,
            total_records=operation.total_records,
            status_url=self._settings.status_url_template.format(
                operation_id=operation.operation_id,
            ),
            result_url=self._result_url(operation.operation_id),
        )

    def _result_url(self, operation_id: UUID) -> str:
        return self._settings.result_url_template.format(operation_id=operation_id)


def _parse_format(input_format: InputFormat | str) -> InputFormat:
    if isinstance(input_format, InputFormat):
        return input_format
    try:
        return InputFormat(str(input_format).upper())
    except ValueError:
        raise UnsupportedFormatError(
            str(input_format), [f.value for f in InputFormat],
        ) from None
