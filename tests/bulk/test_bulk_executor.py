"""
Tests for farmers_bulk.services.executor.BulkExecutor.

Runs both execution paths on the calling thread against SQLite, the real
pipeline, and the fake identity authority.
"""

import threading
import pytest

from farmers_kernel.exceptions import IdentityUnavailableError

from farmers_bulk.domain.types import (
    OperationStatus,
    ProcessingMode,
    ProcessingOptions,
    RecordStatus,
)
from farmers_bulk.pipeline import PipelineFactory
from farmers_bulk.services.executor import BulkExecutor

BAD_PHONE = {"first_name": "Bad", "last_name": "Phone", "phone_number": "12345"}


def _statuses(store, op):
    return [d.status for d in store.get_details_by_operation(op.operation_id)]


def _assert_counts_consistent(op):
    assert op.processed_records == (
        op.successful_records + op.failed_records + op.skipped_records
    )


# =============================================================================
# Inline path
# =============================================================================


class TestInlinePath:

    def test_all_valid_records_succeed(self, executor, store, create_operation, make_records):
        op = create_operation(make_records(3))
        result = executor.run_inline(op, make_records(3), ProcessingOptions())

        assert result.status == OperationStatus.COMPLETED
        loaded = store.get_by_id(op.operation_id)
        assert loaded.status == OperationStatus.COMPLETED
        assert (loaded.processed_records, loaded.successful_records) == (3, 3)
        assert loaded.started_at is not None and loaded.completed_at is not None
        assert _statuses(store, op) == [RecordStatus.SUCCESS] * 3
        _assert_counts_consistent(loaded)

    def test_partial_failure_completes(self, executor, store, create_operation, make_records):
        records = [BAD_PHONE] + make_records(1)
        op = create_operation(records)
        executor.run_inline(op, records, ProcessingOptions(continue_on_error=True))

        loaded = store.get_by_id(op.operation_id)
        assert (loaded.processed_records, loaded.successful_records, loaded.failed_records) == (2, 1, 1)
        assert loaded.status == OperationStatus.COMPLETED
        assert loaded.error_summary == "1 record(s) failed"
        detail = store.get_details_by_operation(op.operation_id)[0]
        assert detail.status == RecordStatus.FAILED
        assert detail.error_code == "VALIDATION_ERROR"

    def test_single_failure_fails_operation(self, executor, store, create_operation):
        op = create_operation([BAD_PHONE])
        result = executor.run_inline(op, [BAD_PHONE], ProcessingOptions())

        assert result.status == OperationStatus.FAILED
        loaded = store.get_by_id(op.operation_id)
        assert (loaded.successful_records, loaded.failed_records) == (0, 1)
        assert loaded.status == OperationStatus.FAILED

    def test_stop_on_first_error(self, executor, store, create_operation, make_records):
        records = make_records(2) + [BAD_PHONE] + make_records(3, start=10)
        op = create_operation(records)
        executor.run_inline(op, records, ProcessingOptions(continue_on_error=False))

        assert _statuses(store, op) == [
            RecordStatus.SUCCESS,
            RecordStatus.SUCCESS,
            RecordStatus.FAILED,
            RecordStatus.PENDING,
            RecordStatus.PENDING,
            RecordStatus.PENDING,
        ]
        loaded = store.get_by_id(op.operation_id)
        assert loaded.processed_records == 3
        _assert_counts_consistent(loaded)

    def test_unexpected_exception_recorded_as_unhandled(
        self, executor, store, create_operation, make_records, authority,
    ):
        authority.fail("find_user_by_mobile", KeyError("boom"))
        op = create_operation(make_records(1))
        executor.run_inline(op, make_records(1), ProcessingOptions())

        detail = store.get_details_by_operation(op.operation_id)[0]
        assert detail.status == RecordStatus.FAILED
        assert detail.error_code == "UNHANDLED_EXCEPTION"

    def test_cancelled_before_start_does_nothing(
        self, executor, store, create_operation, make_records, authority,
    ):
        op = create_operation(make_records(2))
        store.update_status(op.operation_id, OperationStatus.CANCELLED)
        result = executor.run_inline(op, make_records(2), ProcessingOptions())

        assert result.cancelled
        assert result.processed == 0
        assert authority.calls["find_user_by_mobile"] == 0
        assert store.get_by_id(op.operation_id).status == OperationStatus.CANCELLED

    def test_cancel_event_stops_between_records(
        self, executor, store, create_operation, make_records,
    ):
        records = make_records(5)
        op = create_operation(records)
        cancel = threading.Event()
        original = executor.process_record

        def process_then_cancel(*args, **kwargs):
            outcome = original(*args, **kwargs)
            store.update_status(op.operation_id, OperationStatus.CANCELLED)
            cancel.set()
            return outcome

        executor.process_record = process_then_cancel
        result = executor.run_inline(op, records, ProcessingOptions(), cancel)

        assert result.cancelled
        assert result.status == OperationStatus.CANCELLED
        assert _statuses(store, op).count(RecordStatus.SUCCESS) == 1
        assert _statuses(store, op).count(RecordStatus.PENDING) == 4
        assert store.get_by_id(op.operation_id).status == OperationStatus.CANCELLED


# =============================================================================
# Chunked path
# =============================================================================


class TestChunkedPath:

    @pytest.mark.parametrize("chunk_size,concurrency", [(1, 1), (3, 2), (4, 8), (50, 3)])
    def test_processes_every_record(
        self, executor, store, create_operation, make_records, chunk_size, concurrency,
    ):
        records = make_records(10)
        op = create_operation(records, ProcessingMode.ASYNC)
        result = executor.run_chunked(
            op, records, ProcessingOptions(chunk_size=chunk_size, max_concurrency=concurrency),
        )

        assert result.processed == 10
        loaded = store.get_by_id(op.operation_id)
        assert loaded.processed_records == 10
        assert loaded.successful_records == 10
        assert loaded.status == OperationStatus.COMPLETED
        details = store.get_details_by_operation(op.operation_id)
        assert sorted(d.record_index for d in details) == list(range(10))
        assert all(d.status == RecordStatus.SUCCESS for d in details)

    def test_all_failures_fail_operation(self, executor, store, create_operation):
        records = [dict(BAD_PHONE) for _ in range(4)]
        op = create_operation(records, ProcessingMode.ASYNC)
        result = executor.run_chunked(op, records, ProcessingOptions(chunk_size=2, max_concurrency=2))

        assert result.status == OperationStatus.FAILED
        loaded = store.get_by_id(op.operation_id)
        assert loaded.status == OperationStatus.FAILED
        assert loaded.failed_records == 4

    def test_stop_on_error_only_stops_owning_chunk(
        self, executor, store, create_operation, make_records,
    ):
        records = make_records(3) + [BAD_PHONE] + make_records(3, start=20)
        # chunks of 2: [0,1] [2,BAD] [4,5] [6]; chunk 1 stops after its failure
        op = create_operation(records, ProcessingMode.ASYNC)
        executor.run_chunked(
            op, records, ProcessingOptions(chunk_size=2, max_concurrency=1, continue_on_error=False),
        )

        statuses = _statuses(store, op)
        assert statuses[3] == RecordStatus.FAILED
        assert statuses.count(RecordStatus.PENDING) == 0
        loaded = store.get_by_id(op.operation_id)
        assert (loaded.successful_records, loaded.failed_records) == (6, 1)

    def test_stop_on_error_leaves_rest_of_chunk_pending(
        self, executor, store, create_operation, make_records,
    ):
        records = [BAD_PHONE] + make_records(3)
        op = create_operation(records, ProcessingMode.ASYNC)
        executor.run_chunked(
            op, records, ProcessingOptions(chunk_size=4, max_concurrency=1, continue_on_error=False),
        )
        assert _statuses(store, op) == [RecordStatus.FAILED] + [RecordStatus.PENDING] * 3

    def test_concurrency_bound_respected(
        self, store, authority, registry, bulk_settings, clock, create_operation, make_records,
    ):
        active = 0
        peak = 0
        lock = threading.Lock()
        factory = PipelineFactory(authority, registry, bulk_settings)

        class CountingExecutor(BulkExecutor):
            def process_record(self, *args, **kwargs):
                nonlocal active, peak
                with lock:
                    active += 1
                    peak = max(peak, active)
                try:
                    return super().process_record(*args, **kwargs)
                finally:
                    with lock:
                        active -= 1

        executor = CountingExecutor(store, factory, settings=bulk_settings, clock=clock)
        records = make_records(12)
        op = create_operation(records, ProcessingMode.ASYNC)
        executor.run_chunked(op, records, ProcessingOptions(chunk_size=1, max_concurrency=3))

        assert 1 <= peak <= 3
        assert store.get_by_id(op.operation_id).processed_records == 12

    def test_cancel_before_chunks_start(self, executor, store, create_operation, make_records):
        records = make_records(6)
        op = create_operation(records, ProcessingMode.ASYNC)
        cancel = threading.Event()
        cancel.set()
        result = executor.run_chunked(op, records, ProcessingOptions(chunk_size=2), cancel)

        assert result.cancelled
        assert result.processed == 0
        assert _statuses(store, op) == [RecordStatus.PENDING] * 6

    def test_transient_failures_recorded_retryable(
        self, executor, store, create_operation, make_records, authority,
    ):
        records = make_records(4)
        authority.fail_phone(records[1]["phone_number"], IdentityUnavailableError("create_user", "503"))
        op = create_operation(records, ProcessingMode.ASYNC)
        executor.run_chunked(op, records, ProcessingOptions(chunk_size=2, max_concurrency=2))

        retryable = store.get_retryable_details(op.operation_id, max_retries=3)
        assert [d.record_index for d in retryable] == [1]
        assert retryable[0].error_code == "IDENTITY_UNAVAILABLE"
