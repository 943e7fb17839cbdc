"""
Pytest fixtures for the farmer registration test suite.

Provides:
- A file-backed SQLite database per test (threads share it safely)
- Registry, operation store and orchestrator wired to that database
- FakeIdentityAuthority, an in-memory identity service with injectable failures
- Record generators for bulk submissions
"""

import json
import logging
import threading
from collections import Counter
from datetime import datetime, timezone
from io import StringIO
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import farmers_bulk.models  # noqa: F401
import farmers_kernel.models  # noqa: F401
from farmers_config.schema import BulkSettings, ReconciliationSettings
from farmers_kernel.clients.identity import (
    CreateUserRequest,
    IdentityUser,
    Organization,
)
from farmers_kernel.db.base import Base
from farmers_kernel.domain.clock import DeterministicClock
from farmers_kernel.exceptions import IdentityNotFoundError
from farmers_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from farmers_kernel.services.farmer_registry import FarmerRegistry

from farmers_bulk.domain.types import (
    BulkOperation,
    InputFormat,
    NewDetail,
    OperationStatus,
    ProcessingMode,
)
from farmers_bulk.orchestrator import BulkOrchestrator
from farmers_bulk.pipeline import PipelineFactory
from farmers_bulk.services.executor import BulkExecutor
from farmers_bulk.services.store import SqlOperationStore


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, handler=logging.NullHandler())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture farmers logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, registry):
            registry.create_farmer(...)
            assert any(r["message"] == "farmer_created" for r in captured_logs())
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("farmers")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'farmers.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def clock():
    return DeterministicClock(datetime(2024, 6, 1, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def registry(session_factory, clock):
    return FarmerRegistry(session_factory, clock=clock)


@pytest.fixture
def store(session_factory, clock):
    return SqlOperationStore(session_factory, clock=clock)


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture
def bulk_settings():
    """Fast settings: no retry delays, no grace sleep, quick progress flush."""
    return BulkSettings(
        progress_flush_interval_seconds=0.05,
        sync_grace_period_seconds=0.0,
        identity_retry_attempts=2,
        identity_retry_delay_seconds=0.0,
    )


@pytest.fixture
def reconciliation_settings():
    return ReconciliationSettings(
        interval_seconds=3600,
        propagation_delay_seconds=0.0,
        verification_delay_seconds=0.0,
    )


# =============================================================================
# Identity authority fake
# =============================================================================


ORG_ID = "org-fpo-001"


class FakeIdentityAuthority:
    """In-memory IdentityAuthority.

    Failures are injected per method with ``fail(method, exc)``; phone
    specific failures for ``find_user_by_mobile`` / ``create_user`` with
    ``fail_phone(phone, exc)``.  ``roles_visible_after_assign=False``
    makes ``assign_role`` succeed without the role ever becoming visible.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._next_id = 0
        self.users: dict[str, IdentityUser] = {}
        self.organizations: dict[str, Organization] = {}
        self.roles: set[tuple[str, str]] = set()
        self.failures: dict[str, Exception] = {}
        self.phone_failures: dict[str, Exception] = {}
        self.calls: Counter = Counter()
        self.roles_visible_after_assign = True
        self.healthy = True

    # -- test helpers ---------------------------------------------------------

    def fail(self, method: str, exc: Exception) -> None:
        self.failures[method] = exc

    def fail_phone(self, phone: str, exc: Exception) -> None:
        self.phone_failures[phone] = exc

    def clear_failures(self) -> None:
        self.failures.clear()
        self.phone_failures.clear()

    def add_user(self, phone: str, user_id: str | None = None) -> IdentityUser:
        with self._lock:
            self._next_id += 1
            user = IdentityUser(
                id=user_id or f"user-{self._next_id:04d}",
                username=f"farmer_{phone}",
                phone_number=phone,
            )
            self.users[user.id] = user
            return user

    def remove_user(self, user_id: str) -> None:
        with self._lock:
            self.users.pop(user_id, None)

    def add_organization(self, org_id: str, name: str = "Test FPO") -> Organization:
        org = Organization(id=org_id, name=name)
        self.organizations[org_id] = org
        return org

    def _enter(self, method: str, phone: str | None = None) -> None:
        with self._lock:
            self.calls[method] += 1
            exc = self.failures.get(method)
            if exc is None and phone is not None:
                exc = self.phone_failures.get(phone)
        if exc is not None:
            raise exc

    # -- IdentityAuthority ----------------------------------------------------

    def get_user(self, user_id: str) -> IdentityUser:
        self._enter("get_user")
        with self._lock:
            user = self.users.get(user_id)
        if user is None:
            raise IdentityNotFoundError("user", user_id)
        return user

    def find_user_by_mobile(self, phone_number: str) -> IdentityUser | None:
        self._enter("find_user_by_mobile", phone_number)
        with self._lock:
            for user in self.users.values():
                if user.phone_number == phone_number:
                    return user
        return None

    def create_user(self, request: CreateUserRequest) -> IdentityUser:
        self._enter("create_user", request.phone_number)
        with self._lock:
            self._next_id += 1
            user = IdentityUser(
                id=f"user-{self._next_id:04d}",
                username=request.username,
                phone_number=request.phone_number,
                full_name=request.full_name,
                email=request.email,
            )
            self.users[user.id] = user
            return user

    def get_organization(self, org_id: str) -> Organization:
        self._enter("get_organization")
        org = self.organizations.get(org_id)
        if org is None:
            raise IdentityNotFoundError("organization", org_id)
        return org

    def check_role(self, user_id: str, role: str) -> bool:
        self._enter("check_role")
        with self._lock:
            return (user_id, role) in self.roles

    def assign_role(self, user_id: str, org_id: str, role: str) -> None:
        self._enter("assign_role")
        if self.roles_visible_after_assign:
            with self._lock:
                self.roles.add((user_id, role))

    def health_check(self) -> bool:
        self._enter("health_check")
        return self.healthy


@pytest.fixture
def org_id():
    return ORG_ID


@pytest.fixture
def authority():
    fake = FakeIdentityAuthority()
    fake.add_organization(ORG_ID)
    return fake


# =============================================================================
# Bulk fixtures
# =============================================================================


def make_record(i: int, **overrides) -> dict:
    record = {
        "first_name": f"Ravi{i}",
        "last_name": "Kumar",
        "phone_number": f"9{i:09d}",
        "gender": "male",
        "external_id": f"ext-{i}",
    }
    record.update(overrides)
    return record


@pytest.fixture
def make_records():
    """Factory: ``make_records(n)`` returns n valid, distinct farmer records."""

    def _make(n: int, start: int = 1) -> list[dict]:
        return [make_record(i) for i in range(start, start + n)]

    return _make


@pytest.fixture
def orchestrator(session_factory, authority, bulk_settings, clock):
    orch = BulkOrchestrator.from_session_factory(
        session_factory, authority, settings=bulk_settings, clock=clock,
    )
    yield orch
    orch.shutdown(timeout=10)


@pytest.fixture
def executor(store, authority, registry, bulk_settings, clock):
    return BulkExecutor(
        store,
        PipelineFactory(authority, registry, bulk_settings),
        settings=bulk_settings,
        clock=clock,
    )


@pytest.fixture
def create_operation(store, org_id):
    """Factory: persist a PENDING operation plus one detail per record."""

    def _create(records, mode=ProcessingMode.SYNC) -> BulkOperation:
        op = store.create_operation(BulkOperation(
            operation_id=uuid4(),
            org_id=org_id,
            initiated_by="admin-1",
            input_format=InputFormat.JSON,
            processing_mode=mode,
            status=OperationStatus.PENDING,
            total_records=len(records),
        ))
        store.create_details_batch(
            op.operation_id,
            [NewDetail(record_index=i, input_data=r) for i, r in enumerate(records)],
        )
        return op

    return _create
