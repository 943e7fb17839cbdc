"""
Bulk operation lifecycle rules.

Pure functions over statuses and counters.  The store and executor call
these instead of comparing statuses inline.
"""

from farmers_kernel.exceptions import IdentityUnavailableError, OperationStoreError

from farmers_bulk.domain.types import BulkOperation, OperationStatus

# Allowed status transitions (from -> set of valid next states)
ALLOWED_TRANSITIONS: dict[OperationStatus, frozenset[OperationStatus]] = {
    OperationStatus.PENDING: frozenset({
        OperationStatus.PROCESSING,
        OperationStatus.CANCELLED,
    }),
    OperationStatus.PROCESSING: frozenset({
        OperationStatus.COMPLETED,
        OperationStatus.FAILED,
        OperationStatus.CANCELLED,
    }),
    OperationStatus.COMPLETED: frozenset(),  # Terminal
    OperationStatus.FAILED: frozenset(),  # Terminal
    OperationStatus.CANCELLED: frozenset(),  # Terminal
}

TERMINAL_STATUSES: frozenset[OperationStatus] = frozenset({
    OperationStatus.COMPLETED,
    OperationStatus.FAILED,
    OperationStatus.CANCELLED,
})

UNHANDLED_EXCEPTION = "UNHANDLED_EXCEPTION"

# Error codes that describe transient infrastructure failures.  Everything
# else (validation, duplicates, permissions) is permanent.
RETRYABLE_ERROR_CODES: frozenset[str] = frozenset({
    IdentityUnavailableError.code,
    OperationStoreError.code,
    UNHANDLED_EXCEPTION,
})


def validate_transition(current: OperationStatus, target: OperationStatus) -> bool:
    """Check if a status transition is valid."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def is_terminal(status: OperationStatus) -> bool:
    return status in TERMINAL_STATUSES


def final_status(successful: int, failed: int) -> OperationStatus:
    """Status an operation finishes with, for both execution paths."""
    if successful == 0 and failed > 0:
        return OperationStatus.FAILED
    return OperationStatus.COMPLETED


def is_retryable_error(error_code: str | None) -> bool:
    return error_code in RETRYABLE_ERROR_CODES


def can_retry(operation: BulkOperation) -> bool:
    """Terminal operations with failed records may be retried."""
    if operation.status == OperationStatus.FAILED:
        return True
    return operation.status == OperationStatus.COMPLETED and operation.failed_records > 0
