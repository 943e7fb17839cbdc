"""
RetryService -- turns the transient failures of a finished operation
into a new bulk operation.

Responsibility:
    Selects FAILED processing details whose error code is transient and
    whose retry count is below the ceiling, and creates a brand-new
    BulkOperation (mode RETRY) scoped to just those records.  Execution
    is left to the orchestrator, which runs the new operation through the
    same inline/chunked paths as any other submission.

Invariants enforced:
    - The original operation and its details are never modified.
    - New details carry the original payload forward, get sequential
      indices, an incremented retry_count, and provenance metadata
      (original operation, detail id, index, error).
    - The retry operation records its lineage (every ancestor operation
      id) so that farmers saved by a partially successful attempt are
      reused instead of rejected as duplicates.
    - Retries are never repeated automatically.

Failure modes:
    - NotRetryableError: original operation is not terminal.
    - NoRetryableRecordsError: nothing eligible to retry.
    - BulkOperationNotFoundError: unknown operation id.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID, uuid4

from farmers_config.schema import BulkSettings
from farmers_kernel.domain.clock import Clock, SystemClock
from farmers_kernel.exceptions import (
    FarmersKernelError,
    NoRetryableRecordsError,
    NotRetryableError,
)
from farmers_kernel.logging_config import get_logger

from farmers_bulk.domain.lifecycle import is_terminal
from farmers_bulk.domain.types import (
    RETRY_LINEAGE_KEY,
    BulkOperation,
    NewDetail,
    OperationStatus,
    ProcessingMode,
)
from farmers_bulk.services.store import OperationStore

logger = get_logger("bulk.retry")


class RetryService:
    """Creates retry operations from failed processing details.

    Usage:
        retry_op, records = retry_svc.create_retry_operation(op_id)
        executor.run_inline(retry_op, records, options)
    """

    def __init__(
        self,
        store: OperationStore,
        settings: BulkSettings | None = None,
        clock: Clock | None = None,
    ):
        self._store = store
        self._settings = settings or BulkSettings()
        self._clock = clock or SystemClock()

    def create_retry_operation(
        self,
        operation_id: UUID,
        initiated_by: str | None = None,
        reason: str = "manual retry",
    ) -> tuple[BulkOperation, list[dict[str, Any]]]:
        """Create the retry operation and its details.

        Returns the new operation and the records to run, in index order.
        """
        original = self._store.get_by_id(operation_id)
        if not is_terminal(original.status):
            raise NotRetryableError(str(operation_id), original.status.value)

        selected = self._store.get_retryable_details(
            operation_id, self._settings.max_retries,
        )
        if not selected:
            raise NoRetryableRecordsError(str(operation_id))

        retry_op = self._store.create_operation(
            BulkOperation(
                operation_id=uuid4(),
                org_id=original.org_id,
                initiated_by=initiated_by or original.initiated_by,
                input_format=original.input_format,
                processing_mode=ProcessingMode.RETRY,
                status=OperationStatus.PENDING,
                total_records=len(selected),
                options=dict(original.options),
                metadata={
                    "original_operation_id": str(operation_id),
                    "retry_reason": reason,
                    "retried_at": self._clock.isoformat(),
                    RETRY_LINEAGE_KEY: [
                        *original.metadata.get(RETRY_LINEAGE_KEY, []),
                        str(operation_id),
                    ],
                },
            )
        )

        details = [
            NewDetail(
                record_index=new_index,
                input_data=dict(detail.input_data),
                retry_count=detail.retry_count + 1,
                metadata={
                    "original_operation_id": str(operation_id),
                    "original_detail_id": str(detail.detail_id),
                    "original_record_index": detail.record_index,
                    "original_error": detail.error_message,
                    "original_error_code": detail.error_code,
                },
            )
            for new_index, detail in enumerate(selected)
        ]
        try:
            self._store.create_details_batch(retry_op.operation_id, details)
        except FarmersKernelError:
            logger.exception(
                "retry_details_create_failed",
                extra={"retry_operation_id": str(retry_op.operation_id)},
            )

        logger.info(
            "retry_operation_created",
            extra={
                "original_operation_id": str(operation_id),
                "retry_operation_id": str(retry_op.operation_id),
                "records": len(selected),
                "reason": reason,
            },
        )
        return retry_op, [dict(d.input_data) for d in selected]
