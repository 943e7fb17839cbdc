"""
ORM models for bulk operation persistence.

Contract:
    BulkOperationModel and ProcessingDetailModel persist operation state
    and per-record outcomes.  Each has ``to_dto()``; operations also have
    ``from_dto()``.

Architecture: farmers_bulk/models. Imports from farmers_kernel.db.base only.

Invariants enforced:
    - ``(operation_id, record_index)`` is UNIQUE: one detail per input
      record per operation.
    - Timestamps read back from SQLite are normalized to UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from farmers_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from farmers_bulk.domain.types import BulkOperation, ProcessingDetail


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class BulkOperationModel(TrackedBase):
    """Persistent bulk operation record."""

    __tablename__ = "bulk_operations"

    __table_args__ = (
        Index("ix_bulk_operations_status", "status"),
        Index("ix_bulk_operations_org", "org_id"),
        Index("ix_bulk_operations_created_at", "created_at"),
    )

    org_id: Mapped[str] = mapped_column(String(100), nullable=False)
    initiated_by: Mapped[str] = mapped_column(String(100), nullable=False)
    input_format: Mapped[str] = mapped_column(String(20), nullable=False)
    processing_mode: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    total_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    options: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    operation_metadata: Mapped[dict | None] = mapped_column(
        "metadata", JSON, nullable=True,
    )
    result_file_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    details: Mapped[list["ProcessingDetailModel"]] = relationship(
        "ProcessingDetailModel",
        back_populates="operation",
        foreign_keys="ProcessingDetailModel.operation_id",
    )

    def to_dto(self) -> BulkOperation:
        from farmers_bulk.domain.types import (
            BulkOperation,
            InputFormat,
            OperationStatus,
            ProcessingMode,
        )

        return BulkOperation(
            operation_id=self.id,
            org_id=self.org_id,
            initiated_by=self.initiated_by,
            input_format=InputFormat(self.input_format),
            processing_mode=ProcessingMode(self.processing_mode),
            status=OperationStatus(self.status),
            total_records=self.total_records,
            processed_records=self.processed_records,
            successful_records=self.successful_records,
            failed_records=self.failed_records,
            skipped_records=self.skipped_records,
            options=dict(self.options or {}),
            metadata=dict(self.operation_metadata or {}),
            result_file_url=self.result_file_url,
            error_summary=self.error_summary,
            created_at=_as_utc(self.created_at),
            started_at=_as_utc(self.started_at),
            completed_at=_as_utc(self.completed_at),
            processing_time_ms=self.processing_time_ms,
        )

    @classmethod
    def from_dto(cls, dto: BulkOperation) -> BulkOperationModel:
        return cls(
            id=dto.operation_id,
            org_id=dto.org_id,
            initiated_by=dto.initiated_by,
            input_format=dto.input_format.value,
            processing_mode=dto.processing_mode.value,
            status=dto.status.value,
            total_records=dto.total_records,
            processed_records=dto.processed_records,
            successful_records=dto.successful_records,
            failed_records=dto.failed_records,
            skipped_records=dto.skipped_records,
            options=dto.options or None,
            operation_metadata=dto.metadata or None,
            result_file_url=dto.result_file_url,
            error_summary=dto.error_summary,
            started_at=dto.started_at,
            completed_at=dto.completed_at,
            processing_time_ms=dto.processing_time_ms,
        )


class ProcessingDetailModel(TrackedBase):
    """Per-record outcome within a bulk operation."""

    __tablename__ = "processing_details"

    __table_args__ = (
        UniqueConstraint(
            "operation_id", "record_index", name="uq_processing_details_op_index",
        ),
        Index("ix_processing_details_op_status", "operation_id", "status"),
    )

    operation_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("bulk_operations.id", ondelete="CASCADE"),
        nullable=False,
    )
    record_index: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    input_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    farmer_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    aaa_user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    detail_metadata: Mapped[dict | None] = mapped_column(
        "metadata", JSON, nullable=True,
    )

    operation: Mapped["BulkOperationModel"] = relationship(
        "BulkOperationModel",
        back_populates="details",
        foreign_keys=[operation_id],
    )

    def to_dto(self) -> ProcessingDetail:
        from farmers_bulk.domain.types import ProcessingDetail, RecordStatus

        return ProcessingDetail(
            detail_id=self.id,
            operation_id=self.operation_id,
            record_index=self.record_index,
            status=RecordStatus(self.status),
            input_data=dict(self.input_data or {}),
            external_id=self.external_id,
            farmer_id=self.farmer_id,
            aaa_user_id=self.aaa_user_id,
            error_message=self.error_message,
            error_code=self.error_code,
            retry_count=self.retry_count,
            processing_time_ms=self.processing_time_ms,
            processed_at=_as_utc(self.processed_at),
            metadata=dict(self.detail_metadata or {}),
        )
