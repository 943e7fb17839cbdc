"""
farmers_bulk.domain.types -- Pure frozen dataclasses for the bulk engine.

ZERO I/O.  Frozen dataclasses with str-enum status fields and tuples for
immutable collections.  ORM models convert to these via ``to_dto()``.

Invariants enforced:
    - ``processed == successful + failed + skipped`` once an operation is
      terminal (maintained by the executor, checked in tests).
    - ``0 <= processed <= total`` at all times.
    - A ProcessingDetail's ``record_index`` never changes after creation.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum, unique
from typing import TYPE_CHECKING, Any
from uuid import UUID

if TYPE_CHECKING:
    from farmers_config.schema import BulkSettings

# Operation metadata key: ids of every operation a retry descends from,
# oldest first.  Farmers registered by those operations may be resumed.
RETRY_LINEAGE_KEY = "retry_lineage"


# =============================================================================
# Status enums
# =============================================================================


@unique
class OperationStatus(str, Enum):
    """BulkOperation lifecycle status."""

    PENDING = "PENDING"  # Created, no record started
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"  # Finished with at least one success (or nothing failed)
    FAILED = "FAILED"  # Finished with zero successes and at least one failure
    CANCELLED = "CANCELLED"


@unique
class RecordStatus(str, Enum):
    """ProcessingDetail lifecycle status."""

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@unique
class ProcessingMode(str, Enum):
    """How an operation was scheduled."""

    SYNC = "SYNC"  # Inline sequential path
    ASYNC = "ASYNC"  # Chunked concurrent path
    RETRY = "RETRY"  # Spawned by the retry subsystem


@unique
class InputFormat(str, Enum):
    CSV = "CSV"
    EXCEL = "EXCEL"
    JSON = "JSON"


# =============================================================================
# Options
# =============================================================================


@dataclass(frozen=True)
class ProcessingOptions:
    """Per-submission processing options.

    Zero ``chunk_size`` / ``max_concurrency`` mean "use the configured
    default"; ``with_defaults()`` resolves them before use.  ``mode`` is
    ``"sync"``, ``"async"`` or None (decide by record count).
    """

    mode: str | None = None
    validate_only: bool = False
    continue_on_error: bool = True
    chunk_size: int = 0
    max_concurrency: int = 0
    skip_duplicate_detection: bool = False
    skip_role_assignment: bool = False
    assign_kisan_sathi: bool = False
    kisan_sathi_user_id: str | None = None

    def with_defaults(self, settings: BulkSettings) -> ProcessingOptions:
        return replace(
            self,
            chunk_size=self.chunk_size if self.chunk_size > 0 else settings.default_chunk_size,
            max_concurrency=(
                self.max_concurrency if self.max_concurrency > 0 else settings.max_concurrency
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ProcessingOptions:
        if not data:
            return cls()
        names = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in data.items() if k in names})


# =============================================================================
# Operation and detail DTOs
# =============================================================================


@dataclass(frozen=True)
class BulkOperation:
    """Immutable snapshot of one bulk submission."""

    operation_id: UUID
    org_id: str
    initiated_by: str
    input_format: InputFormat
    processing_mode: ProcessingMode
    status: OperationStatus
    total_records: int
    processed_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    skipped_records: int = 0
    options: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    result_file_url: str | None = None
    error_summary: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    processing_time_ms: int | None = None

    @property
    def is_terminal(self) -> bool:
        from farmers_bulk.domain.lifecycle import is_terminal

        return is_terminal(self.status)

    @property
    def progress_percentage(self) -> float:
        if self.total_records == 0:
            return 0.0
        return self.processed_records / self.total_records * 100.0


@dataclass(frozen=True)
class ProcessingDetail:
    """Outcome of one input record within a bulk operation."""

    detail_id: UUID
    operation_id: UUID
    record_index: int  # 0-based position in the submitted batch
    status: RecordStatus
    input_data: dict[str, Any] = field(default_factory=dict)
    external_id: str | None = None
    farmer_id: str | None = None
    aaa_user_id: str | None = None
    error_message: str | None = None
    error_code: str | None = None
    retry_count: int = 0
    processing_time_ms: int | None = None
    processed_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NewDetail:
    """Input for ``OperationStore.create_details_batch``."""

    record_index: int
    input_data: dict[str, Any]
    retry_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RecordOutcome:
    """Result of running the pipeline over one record."""

    record_index: int
    status: RecordStatus
    farmer_id: str | None = None
    aaa_user_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    failed_stage: str | None = None
    processing_time_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == RecordStatus.SUCCESS


# =============================================================================
# Progress
# =============================================================================


@dataclass(frozen=True)
class ProgressUpdate:
    """Incremental progress event consumed by the ProgressAggregator."""

    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0

    @classmethod
    def for_outcome(cls, outcome: RecordOutcome) -> ProgressUpdate:
        if outcome.succeeded:
            return cls(processed=1, successful=1)
        return cls(processed=1, failed=1)


@dataclass(frozen=True)
class RunResult:
    """Summary of one execution path run over an operation."""

    operation_id: UUID
    status: OperationStatus
    processed: int
    successful: int
    failed: int
    skipped: int = 0
    duration_ms: int = 0
    cancelled: bool = False


# =============================================================================
# Caller-facing results
# =============================================================================


@dataclass(frozen=True)
class OperationHandle:
    """Returned by submit and retry: where to poll for progress."""

    operation_id: UUID
    status: OperationStatus
    processing_mode: ProcessingMode
    total_records: int
    status_url: str
    result_url: str


@dataclass(frozen=True)
class RecordFieldError:
    """One field problem found by validate-only submission."""

    record_number: int  # 1-based, as shown to users
    field: str
    code: str  # REQUIRED, INVALID_FORMAT, DUPLICATE
    message: str
    value: str | None = None


@dataclass(frozen=True)
class ValidationSummary:
    """Returned by submit when ``validate_only`` is set."""

    total_records: int
    valid_records: int
    invalid_records: int
    errors: tuple[RecordFieldError, ...] = ()

    @property
    def is_valid(self) -> bool:
        return self.invalid_records == 0


@dataclass(frozen=True)
class OperationStatusView:
    """Progress view of an operation, as returned by ``get_status``."""

    operation_id: UUID
    status: OperationStatus
    total_records: int
    processed_records: int
    successful_records: int
    failed_records: int
    skipped_records: int
    progress_percentage: float
    can_retry: bool
    estimated_completion: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_summary: str | None = None
    result_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
