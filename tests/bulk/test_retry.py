"""
Tests for farmers_bulk.services.retry.RetryService.

A finished operation's transient failures become a new RETRY operation
with provenance metadata; permanent failures are never selected.
"""

from uuid import uuid4

import pytest

from farmers_kernel.exceptions import (
    BulkOperationNotFoundError,
    IdentityUnavailableError,
    NoRetryableRecordsError,
    NotRetryableError,
)

from farmers_bulk.domain.types import (
    OperationStatus,
    ProcessingMode,
    ProcessingOptions,
    RecordStatus,
)
from farmers_bulk.services.retry import RetryService

BAD_PHONE = {"first_name": "Bad", "last_name": "Phone", "phone_number": "12345"}


@pytest.fixture
def retry_service(store, bulk_settings, clock):
    return RetryService(store, settings=bulk_settings, clock=clock)


@pytest.fixture
def finished_operation(executor, create_operation, make_records, authority):
    """4 records: index 1 transient failure, index 2 validation failure."""
    records = make_records(4)
    records[2] = dict(BAD_PHONE)
    authority.fail_phone(records[1]["phone_number"], IdentityUnavailableError("create_user", "503"))
    op = create_operation(records)
    executor.run_inline(op, records, ProcessingOptions(skip_role_assignment=True))
    authority.clear_failures()
    return op, records


class TestRetrySelection:

    def test_only_transient_failures_selected(self, retry_service, store, finished_operation, clock):
        original, records = finished_operation
        retry_op, retry_records = retry_service.create_retry_operation(
            original.operation_id, reason="network blip",
        )

        assert retry_op.processing_mode == ProcessingMode.RETRY
        assert retry_op.status == OperationStatus.PENDING
        assert retry_op.total_records == 1
        assert retry_op.options == {}
        assert retry_op.metadata == {
            "original_operation_id": str(original.operation_id),
            "retry_reason": "network blip",
            "retried_at": clock.isoformat(),
            "retry_lineage": [str(original.operation_id)],
        }
        assert retry_records == [records[1]]

    def test_new_details_carry_provenance(self, retry_service, store, finished_operation):
        original, records = finished_operation
        retry_op, _ = retry_service.create_retry_operation(original.operation_id)

        (detail,) = store.get_details_by_operation(retry_op.operation_id)
        assert detail.record_index == 0
        assert detail.status == RecordStatus.PENDING
        assert detail.retry_count == 1
        assert detail.input_data == records[1]
        assert detail.metadata["original_operation_id"] == str(original.operation_id)
        assert detail.metadata["original_record_index"] == 1
        assert detail.metadata["original_error_code"] == "IDENTITY_UNAVAILABLE"

    def test_original_untouched(self, retry_service, store, finished_operation):
        original, _ = finished_operation
        before = store.get_details_by_operation(original.operation_id)
        retry_service.create_retry_operation(original.operation_id)
        assert store.get_details_by_operation(original.operation_id) == before

    def test_retry_of_retry_succeeds(
        self, retry_service, executor, store, finished_operation,
    ):
        original, _ = finished_operation
        retry_op, retry_records = retry_service.create_retry_operation(original.operation_id)
        result = executor.run_inline(retry_op, retry_records, ProcessingOptions(skip_role_assignment=True))

        assert result.status == OperationStatus.COMPLETED
        (detail,) = store.get_details_by_operation(retry_op.operation_id)
        assert detail.status == RecordStatus.SUCCESS


class TestRetryRejections:

    def test_non_terminal_operation(self, retry_service, store, create_operation, make_records):
        op = create_operation(make_records(2))
        store.update_status(op.operation_id, OperationStatus.PROCESSING)
        with pytest.raises(NotRetryableError):
            retry_service.create_retry_operation(op.operation_id)

    def test_pending_operation(self, retry_service, create_operation, make_records):
        op = create_operation(make_records(2))
        with pytest.raises(NotRetryableError):
            retry_service.create_retry_operation(op.operation_id)

    def test_no_failed_records(self, retry_service, executor, create_operation, make_records):
        records = make_records(2)
        op = create_operation(records)
        executor.run_inline(op, records, ProcessingOptions())
        with pytest.raises(NoRetryableRecordsError):
            retry_service.create_retry_operation(op.operation_id)

    def test_only_permanent_failures(self, retry_service, executor, create_operation):
        records = [dict(BAD_PHONE)]
        op = create_operation(records)
        executor.run_inline(op, records, ProcessingOptions())
        with pytest.raises(NoRetryableRecordsError):
            retry_service.create_retry_operation(op.operation_id)

    def test_unknown_operation(self, retry_service):
        with pytest.raises(BulkOperationNotFoundError):
            retry_service.create_retry_operation(uuid4())
