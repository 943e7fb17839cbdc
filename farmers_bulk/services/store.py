"""
OperationStore -- durable store for bulk operations and processing details.

Contract:
    ``OperationStore`` is the repository protocol the engine depends on.
    ``SqlOperationStore`` implements it on SQLAlchemy.

Architecture: farmers_bulk/services.  Imports farmers_bulk.models and
    kernel db utilities.

Invariants enforced:
    - Thread-safe: every call opens its own session from the factory, so
      chunk workers, the progress aggregator and the orchestrator can all
      share one store.
    - Status changes are single conditional UPDATEs that only apply when
      the lifecycle allows the transition; a CANCELLED operation is never
      overwritten by a late finalization.
    - A processing detail is written once: the outcome UPDATE only matches
      rows still PENDING.

Failure modes:
    - BulkOperationNotFoundError for unknown operation ids.
    - OperationStoreError wraps any SQLAlchemyError so callers can treat
      store failures as transient.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Generator, Protocol, Sequence, runtime_checkable
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from farmers_kernel.db.engine import transactional_scope
from farmers_kernel.domain.clock import Clock, SystemClock
from farmers_kernel.exceptions import (
    BulkOperationNotFoundError,
    OperationStoreError,
)
from farmers_kernel.logging_config import get_logger

from farmers_bulk.domain.lifecycle import (
    ALLOWED_TRANSITIONS,
    RETRYABLE_ERROR_CODES,
    is_terminal,
)
from farmers_bulk.domain.types import (
    BulkOperation,
    NewDetail,
    OperationStatus,
    ProcessingDetail,
    RecordOutcome,
    RecordStatus,
)
from farmers_bulk.models.bulk import BulkOperationModel, ProcessingDetailModel

logger = get_logger("bulk.store")


@runtime_checkable
class OperationStore(Protocol):
    """Repository contract consumed by the orchestrator, executor and retry."""

    def create_operation(self, operation: BulkOperation) -> BulkOperation: ...

    def create_details_batch(
        self, operation_id: UUID, details: Sequence[NewDetail],
    ) -> int: ...

    def update_status(
        self,
        operation_id: UUID,
        status: OperationStatus,
        *,
        error_summary: str | None = None,
        processing_time_ms: int | None = None,
    ) -> bool:
        """Apply the transition if the lifecycle allows it; return whether it applied."""
        ...

    def update_progress(
        self,
        operation_id: UUID,
        processed: int,
        successful: int,
        failed: int,
        skipped: int,
    ) -> None: ...

    def update_detail(self, operation_id: UUID, outcome: RecordOutcome) -> bool: ...

    def get_by_id(self, operation_id: UUID) -> BulkOperation: ...

    def get_details_by_operation(
        self, operation_id: UUID,
    ) -> tuple[ProcessingDetail, ...]: ...

    def get_retryable_details(
        self, operation_id: UUID, max_retries: int,
    ) -> tuple[ProcessingDetail, ...]: ...


class SqlOperationStore:
    """SQLAlchemy implementation of ``OperationStore``."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    @contextmanager
    def _scope(self, operation: str) -> Generator[Session, None, None]:
        try:
            with transactional_scope(self._session_factory) as session:
                yield session
        except SQLAlchemyError as exc:
            raise OperationStoreError(operation, str(exc)) from exc

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def create_operation(self, operation: BulkOperation) -> BulkOperation:
        model = BulkOperationModel.from_dto(operation)
        model.created_at = self._clock.now()
        with self._scope("create_operation") as session:
            session.add(model)
            session.flush()
            dto = model.to_dto()

        logger.info(
            "bulk_operation_created",
            extra={
                "operation_id": str(dto.operation_id),
                "org_id": dto.org_id,
                "total_records": dto.total_records,
                "processing_mode": dto.processing_mode.value,
            },
        )
        return dto

    def create_details_batch(
        self, operation_id: UUID, details: Sequence[NewDetail],
    ) -> int:
        now = self._clock.now()
        models = [
            ProcessingDetailModel(
                operation_id=operation_id,
                record_index=d.record_index,
                status=RecordStatus.PENDING.value,
                input_data=dict(d.input_data),
                external_id=_external_id(d.input_data),
                retry_count=d.retry_count,
                detail_metadata=dict(d.metadata) or None,
                created_at=now,
            )
            for d in details
        ]
        with self._scope("create_details_batch") as session:
            session.add_all(models)
        return len(models)

    def update_status(
        self,
        operation_id: UUID,
        status: OperationStatus,
        *,
        error_summary: str | None = None,
        processing_time_ms: int | None = None,
    ) -> bool:
        sources = [
            current.value
            for current, targets in ALLOWED_TRANSITIONS.items()
            if status in targets
        ]
        values: dict = {"status": status.value}
        now = self._clock.now()
        if status == OperationStatus.PROCESSING:
            values["started_at"] = now
        if is_terminal(status):
            values["completed_at"] = now
            if processing_time_ms is not None:
                values["processing_time_ms"] = processing_time_ms
        if error_summary is not None:
            values["error_summary"] = error_summary

        with self._scope("update_status") as session:
            result = session.execute(
                update(BulkOperationModel)
                .where(
                    BulkOperationModel.id == operation_id,
                    BulkOperationModel.status.in_(sources),
                )
                .values(**values)
            )
            applied = result.rowcount == 1
            if not applied and session.get(BulkOperationModel, operation_id) is None:
                raise BulkOperationNotFoundError(str(operation_id))

        logger.info(
            "bulk_operation_status_changed" if applied else "bulk_operation_status_unchanged",
            extra={"operation_id": str(operation_id), "status": status.value},
        )
        return applied

    def update_progress(
        self,
        operation_id: UUID,
        processed: int,
        successful: int,
        failed: int,
        skipped: int,
    ) -> None:
        with self._scope("update_progress") as session:
            session.execute(
                update(BulkOperationModel)
                .where(BulkOperationModel.id == operation_id)
                .values(
                    processed_records=processed,
                    successful_records=successful,
                    failed_records=failed,
                    skipped_records=skipped,
                )
            )

    def update_detail(self, operation_id: UUID, outcome: RecordOutcome) -> bool:
        values: dict = {
            "status": outcome.status.value,
            "processing_time_ms": outcome.processing_time_ms,
            "processed_at": self._clock.now(),
        }
        if outcome.succeeded:
            values["farmer_id"] = outcome.farmer_id
            values["aaa_user_id"] = outcome.aaa_user_id
        else:
            values["error_code"] = outcome.error_code
            values["error_message"] = outcome.error_message
            values["aaa_user_id"] = outcome.aaa_user_id

        with self._scope("update_detail") as session:
            result = session.execute(
                update(ProcessingDetailModel)
                .where(
                    ProcessingDetailModel.operation_id == operation_id,
                    ProcessingDetailModel.record_index == outcome.record_index,
                    ProcessingDetailModel.status == RecordStatus.PENDING.value,
                )
                .values(**values)
            )
            return result.rowcount == 1

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_by_id(self, operation_id: UUID) -> BulkOperation:
        with self._scope("get_by_id") as session:
            model = session.get(BulkOperationModel, operation_id)
            if model is None:
                raise BulkOperationNotFoundError(str(operation_id))
            return model.to_dto()

    def get_details_by_operation(
        self, operation_id: UUID,
    ) -> tuple[ProcessingDetail, ...]:
        with self._scope("get_details_by_operation") as session:
            models = session.execute(
                select(ProcessingDetailModel)
                .where(ProcessingDetailModel.operation_id == operation_id)
                .order_by(ProcessingDetailModel.record_index)
            ).scalars().all()
            return tuple(m.to_dto() for m in models)

    def get_retryable_details(
        self, operation_id: UUID, max_retries: int,
    ) -> tuple[ProcessingDetail, ...]:
        """FAILED details with a transient error code and retries left."""
        with self._scope("get_retryable_details") as session:
            models = session.execute(
                select(ProcessingDetailModel)
                .where(
                    ProcessingDetailModel.operation_id == operation_id,
                    ProcessingDetailModel.status == RecordStatus.FAILED.value,
                    ProcessingDetailModel.retry_count < max_retries,
                    ProcessingDetailModel.error_code.in_(sorted(RETRYABLE_ERROR_CODES)),
                )
                .order_by(ProcessingDetailModel.record_index)
            ).scalars().all()
            return tuple(m.to_dto() for m in models)


def _external_id(payload: dict) -> str | None:
    value = payload.get("external_id")
    return str(value) if value not in (None, "") else None
