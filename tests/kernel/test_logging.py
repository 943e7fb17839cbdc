"""Tests for the structured logging system (farmers_kernel/logging_config.py)."""

import json
import logging
import threading
from io import StringIO
from uuid import uuid4

import pytest

from farmers_kernel.exceptions import IdentityUnavailableError
from farmers_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests, then restore the suite's setup."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG, handler=logging.NullHandler())


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_all_logs(stream)[0]
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "farmers.test"
        assert record["thread"] == threading.current_thread().name
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("record_failed", extra={"record_index": 7, "error_code": "X"})

        record = _parse_all_logs(stream)[0]
        assert record["record_index"] == 7
        assert record["error_code"] == "X"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(operation_id="op-1", org_id="org-9")
        get_logger("test").info("msg")

        record = _parse_all_logs(stream)[0]
        assert record["operation_id"] == "op-1"
        assert record["org_id"] == "org-9"

    def test_kernel_exception_fields_extracted(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise IdentityUnavailableError("assign_role", "timeout")
        except IdentityUnavailableError:
            get_logger("test").error("identity_error", exc_info=True)

        record = _parse_all_logs(stream)[0]
        assert record["exc_code"] == "IDENTITY_UNAVAILABLE"
        assert record["exc_type"] == "IdentityUnavailableError"
        assert record["exc_operation"] == "assign_role"
        assert record["exc_reason"] == "timeout"
        assert "traceback" in record

    def test_uuid_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        uid = uuid4()
        get_logger("test").info("with_uuid", extra={"farmer_id": uid})

        assert _parse_all_logs(stream)[0]["farmer_id"] == str(uid)

    def test_debug_suppressed_at_info(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.debug("second")

        assert [r["message"] for r in _parse_all_logs(stream)] == ["first"]


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:

    def test_bind_restores_previous(self):
        LogContext.set(operation_id="outer")
        with LogContext.bind(operation_id="inner"):
            assert LogContext.get_all()["operation_id"] == "inner"
        assert LogContext.get_all()["operation_id"] == "outer"

    def test_bind_stringifies_values(self):
        uid = uuid4()
        with LogContext.bind(operation_id=uid):
            assert LogContext.get_all()["operation_id"] == str(uid)

    def test_bind_ignores_unknown_fields(self):
        with LogContext.bind(not_a_field="x", actor_id="u-1"):
            assert LogContext.get_all() == {"actor_id": "u-1"}

    def test_context_does_not_leak_into_new_threads(self):
        LogContext.set(operation_id="main")
        seen = {}

        def worker():
            seen.update(LogContext.get_all())

        t = threading.Thread(target=worker)
        t.start()
        t.join()
        assert seen == {}


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:

    def test_idempotent(self):
        handler, _ = _make_handler()
        configure_logging(handler=handler)
        configure_logging(handler=handler)
        assert len(logging.getLogger("farmers").handlers) == 1

    def test_reset_clears_handlers(self):
        configure_logging(handler=logging.NullHandler())
        reset_logging()
        assert logging.getLogger("farmers").handlers == []
