"""
Tests for farmers_kernel.exceptions.

Validates the hierarchy, machine-readable codes, retryable flags, and
how PipelineStageError mirrors its cause.
"""

import pytest

from farmers_kernel.exceptions import (
    BulkOperationError,
    BulkOperationNotFoundError,
    DuplicateRecordError,
    EmptyInputError,
    FarmersKernelError,
    IdentityError,
    IdentityNotFoundError,
    IdentityPermissionError,
    IdentityUnavailableError,
    InputError,
    NoRetryableRecordsError,
    NotRetryableError,
    OperationNotCancellableError,
    OperationStoreError,
    PipelineStageError,
    ReconciliationAlreadyRunningError,
    RecordError,
    RecordValidationError,
    UnsupportedFormatError,
)


# =============================================================================
# Hierarchy
# =============================================================================


class TestExceptionHierarchy:

    @pytest.mark.parametrize("cls,parent", [
        (EmptyInputError, InputError),
        (UnsupportedFormatError, InputError),
        (RecordValidationError, RecordError),
        (DuplicateRecordError, RecordError),
        (IdentityNotFoundError, IdentityError),
        (IdentityUnavailableError, IdentityError),
        (IdentityPermissionError, IdentityError),
        (BulkOperationNotFoundError, BulkOperationError),
        (OperationNotCancellableError, BulkOperationError),
        (NotRetryableError, BulkOperationError),
        (NoRetryableRecordsError, BulkOperationError),
        (OperationStoreError, FarmersKernelError),
        (ReconciliationAlreadyRunningError, FarmersKernelError),
    ])
    def test_inherits(self, cls, parent):
        assert issubclass(cls, parent)
        assert issubclass(cls, FarmersKernelError)

    @pytest.mark.parametrize("cls,code", [
        (EmptyInputError, "EMPTY_INPUT"),
        (UnsupportedFormatError, "UNSUPPORTED_FORMAT"),
        (RecordValidationError, "VALIDATION_ERROR"),
        (DuplicateRecordError, "DUPLICATE_RECORD"),
        (IdentityNotFoundError, "IDENTITY_NOT_FOUND"),
        (IdentityUnavailableError, "IDENTITY_UNAVAILABLE"),
        (IdentityPermissionError, "PERMISSION_DENIED"),
        (PipelineStageError, "PIPELINE_STAGE_FAILED"),
        (OperationStoreError, "STORE_UNAVAILABLE"),
        (ReconciliationAlreadyRunningError, "RECONCILIATION_RUNNING"),
    ])
    def test_codes(self, cls, code):
        assert cls.code == code

    def test_only_transient_errors_are_retryable(self):
        assert IdentityUnavailableError.retryable is True
        assert OperationStoreError.retryable is True
        assert IdentityNotFoundError.retryable is False
        assert IdentityPermissionError.retryable is False
        assert RecordValidationError.retryable is False
        assert DuplicateRecordError.retryable is False


# =============================================================================
# Construction
# =============================================================================


class TestExceptionConstruction:

    def test_empty_input_message(self):
        assert str(EmptyInputError()) == "no valid farmer records found in input"

    def test_unsupported_format_lists_supported(self):
        exc = UnsupportedFormatError("XML", ["CSV", "EXCEL", "JSON"])
        assert exc.input_format == "XML"
        assert "CSV, EXCEL, JSON" in str(exc)

    def test_duplicate_record_attributes(self):
        exc = DuplicateRecordError("9876543210", "farmer-1")
        assert exc.phone_number == "9876543210"
        assert exc.existing_farmer_id == "farmer-1"

    def test_not_cancellable_mentions_status(self):
        exc = OperationNotCancellableError("op-1", "COMPLETED")
        assert exc.status == "COMPLETED"
        assert "COMPLETED" in str(exc)

    def test_reconciliation_running_message(self):
        assert str(ReconciliationAlreadyRunningError()) == "reconciliation already running"


# =============================================================================
# PipelineStageError
# =============================================================================


class TestPipelineStageError:

    def test_mirrors_kernel_cause(self):
        cause = IdentityUnavailableError("create_user", "503")
        exc = PipelineStageError("identity_user", 2, cause)
        assert exc.code == "PIPELINE_STAGE_FAILED"
        assert exc.error_code == "IDENTITY_UNAVAILABLE"
        assert exc.retryable is True
        assert exc.stage_name == "identity_user"
        assert exc.stage_index == 2
        assert exc.cause_message == str(cause)

    def test_permanent_cause_not_retryable(self):
        exc = PipelineStageError("validation", 0, RecordValidationError("phone_number", "bad"))
        assert exc.error_code == "VALIDATION_ERROR"
        assert exc.retryable is False

    def test_unexpected_cause_is_unhandled_and_retryable(self):
        exc = PipelineStageError("farmer_registration", 3, KeyError("x"))
        assert exc.error_code == "UNHANDLED_EXCEPTION"
        assert exc.retryable is True
