"""
Typed Exception Hierarchy for the farmer registration platform.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Bulk registration touches three unreliable things at once: user input,
the remote identity authority, and the operation store.  Callers need to
tell these apart without parsing messages:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

The ``code`` of the exception that stopped a record is what gets written
to ``ProcessingDetail.error_code``, and it is the code (not the message)
that decides whether the record may be retried.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    FarmersKernelError (base)
    |
    +-- InputError
    |   +-- EmptyInputError
    |   +-- UnsupportedFormatError
    |
    +-- RecordError
    |   +-- RecordValidationError
    |   +-- DuplicateRecordError
    |
    +-- IdentityError
    |   +-- IdentityNotFoundError
    |   +-- IdentityUnavailableError
    |   +-- IdentityPermissionError
    |
    +-- PipelineStageError
    |
    +-- BulkOperationError
    |   +-- BulkOperationNotFoundError
    |   +-- OperationNotCancellableError
    |   +-- NotRetryableError
    |   +-- NoRetryableRecordsError
    |
    +-- OperationStoreError
    |
    +-- FarmerNotFoundError
    |
    +-- ReconciliationAlreadyRunningError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | Retried?
----------------|-----------------------------|---------------------------------
Input           | EMPTY_INPUT                 | never (rejected before creation)
                | UNSUPPORTED_FORMAT          | never (rejected before creation)
----------------|-----------------------------|---------------------------------
Record          | VALIDATION_ERROR            | never
                | DUPLICATE_RECORD            | never
----------------|-----------------------------|---------------------------------
Identity        | IDENTITY_NOT_FOUND          | never (drift, handled by cleanup)
                | IDENTITY_UNAVAILABLE        | yes (transient)
                | PERMISSION_DENIED           | never
----------------|-----------------------------|---------------------------------
Store           | STORE_UNAVAILABLE           | yes (transient)
----------------|-----------------------------|---------------------------------
Bulk            | BULK_OPERATION_NOT_FOUND    | n/a
                | OPERATION_NOT_CANCELLABLE   | n/a
                | NOT_RETRYABLE               | n/a
                | NO_RETRYABLE_RECORDS        | n/a
----------------|-----------------------------|---------------------------------
Reconciliation  | RECONCILIATION_RUNNING      | n/a

Records that fail with an exception outside this hierarchy are stored
with code ``UNHANDLED_EXCEPTION`` and are treated as transient.

===============================================================================
HANDLING PATTERNS
===============================================================================

1. DISTINGUISH "NOT FOUND" FROM "COULD NOT ASK":

    try:
        authority.get_user(farmer.aaa_user_id)
    except IdentityNotFoundError:
        registry.permanently_delete_farmer(farmer.id)   # drift
    except IdentityError:
        pass                                            # skip this pass

2. UNWRAP PIPELINE FAILURES:

    except PipelineStageError as e:
        detail.error_code = e.error_code    # code of the underlying cause
        detail.stage = e.stage_name
"""

from typing import Any


class FarmersKernelError(Exception):
    """
    Base exception for all farmer platform errors.

    All subclasses carry a ``code`` class attribute and a ``retryable``
    class attribute describing whether the condition is transient.
    """

    code: str = "FARMERS_KERNEL_ERROR"
    retryable: bool = False


# Input errors


class InputError(FarmersKernelError):
    """Base exception for rejected submissions."""

    code: str = "INPUT_ERROR"


class EmptyInputError(InputError):
    """A bulk submission contained no records."""

    code: str = "EMPTY_INPUT"

    def __init__(self):
        super().__init__("no valid farmer records found in input")


class UnsupportedFormatError(InputError):
    """The declared input format is not one the engine accepts."""

    code: str = "UNSUPPORTED_FORMAT"

    def __init__(self, input_format: str, supported: list[str]):
        self.input_format = input_format
        self.supported = supported
        super().__init__(
            f"Unsupported input format '{input_format}'. "
            f"Supported: {', '.join(supported)}"
        )


# Record-level errors


class RecordError(FarmersKernelError):
    """Base exception for permanent problems with one input record."""

    code: str = "RECORD_ERROR"


class RecordValidationError(RecordError):
    """One or more fields of an input record are missing or malformed."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str, value: Any = None):
        self.field = field
        self.reason = reason
        self.value = value
        super().__init__(f"{field}: {reason}")


class DuplicateRecordError(RecordError):
    """A farmer with the same phone number is already registered."""

    code: str = "DUPLICATE_RECORD"

    def __init__(self, phone_number: str, existing_farmer_id: str):
        self.phone_number = phone_number
        self.existing_farmer_id = existing_farmer_id
        super().__init__(
            f"Farmer with phone {phone_number} already exists: {existing_farmer_id}"
        )


# Identity authority errors


class IdentityError(FarmersKernelError):
    """Base exception for identity authority failures."""

    code: str = "IDENTITY_ERROR"


class IdentityNotFoundError(IdentityError):
    """The identity authority definitively reports the entity does not exist."""

    code: str = "IDENTITY_NOT_FOUND"

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class IdentityUnavailableError(IdentityError):
    """The identity authority could not answer (network, timeout, 5xx)."""

    code: str = "IDENTITY_UNAVAILABLE"
    retryable: bool = True

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Identity authority unavailable during {operation}: {reason}")


class IdentityPermissionError(IdentityError):
    """The caller is not permitted to perform the identity operation."""

    code: str = "PERMISSION_DENIED"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Permission denied for {operation}: {reason}")


# Pipeline errors


class PipelineStageError(FarmersKernelError):
    """A pipeline stage failed; wraps the underlying cause.

    ``error_code`` and ``retryable`` mirror the cause so that callers can
    persist and classify the failure without unwrapping.
    """

    code: str = "PIPELINE_STAGE_FAILED"

    def __init__(
        self,
        stage_name: str,
        stage_index: int,
        cause: BaseException,
    ):
        self.stage_name = stage_name
        self.stage_index = stage_index
        if isinstance(cause, FarmersKernelError):
            self.error_code = cause.code
            self.retryable = cause.retryable
        else:
            # Foreign ``code`` attributes (SQLAlchemy docs ids) are ignored
            self.error_code = "UNHANDLED_EXCEPTION"
            self.retryable = True
        self.cause_message = str(cause)
        super().__init__(f"stage {stage_name} failed: {cause}")


# Bulk operation errors


class BulkOperationError(FarmersKernelError):
    """Base exception for bulk operation lifecycle errors."""

    code: str = "BULK_OPERATION_ERROR"


class BulkOperationNotFoundError(BulkOperationError):
    """Bulk operation with given ID was not found."""

    code: str = "BULK_OPERATION_NOT_FOUND"

    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        super().__init__(f"Bulk operation not found: {operation_id}")


class OperationNotCancellableError(BulkOperationError):
    """Cancellation requested for an operation that already finished."""

    code: str = "OPERATION_NOT_CANCELLABLE"

    def __init__(self, operation_id: str, status: str):
        self.operation_id = operation_id
        self.status = status
        super().__init__(
            f"Cannot cancel operation {operation_id}: already {status}"
        )


class NotRetryableError(BulkOperationError):
    """The operation is not in a state that permits retry."""

    code: str = "NOT_RETRYABLE"

    def __init__(self, operation_id: str, status: str):
        self.operation_id = operation_id
        self.status = status
        super().__init__(
            f"Operation {operation_id} cannot be retried in status {status}"
        )


class NoRetryableRecordsError(BulkOperationError):
    """The operation has no failed records eligible for retry."""

    code: str = "NO_RETRYABLE_RECORDS"

    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        super().__init__(f"No retryable records found for operation {operation_id}")


# Store errors


class OperationStoreError(FarmersKernelError):
    """The operation store could not complete a write."""

    code: str = "STORE_UNAVAILABLE"
    retryable: bool = True

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Operation store failure during {operation}: {reason}")


# Registry errors


class FarmerNotFoundError(FarmersKernelError):
    """Local farmer with given ID was not found."""

    code: str = "FARMER_NOT_FOUND"

    def __init__(self, farmer_id: str):
        self.farmer_id = farmer_id
        super().__init__(f"Farmer not found: {farmer_id}")


# Reconciliation errors


class ReconciliationAlreadyRunningError(FarmersKernelError):
    """A reconciliation pass is already in progress on this job."""

    code: str = "RECONCILIATION_RUNNING"

    def __init__(self):
        super().__init__("reconciliation already running")
