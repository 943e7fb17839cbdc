"""
Tests for farmers_services.bootstrap: configuration to running services,
plus the module-level engine helpers it relies on.
"""

import pytest
import yaml
from sqlalchemy import func, inspect, select

from farmers_kernel.db.engine import get_engine, get_session_factory, reset_engine, session_scope
from farmers_kernel.models import FarmerModel

from farmers_bulk.domain.types import InputFormat, OperationStatus
from farmers_services import bootstrap


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "farmers.yaml"
    path.write_text(yaml.safe_dump({
        "database": {"url": f"sqlite:///{tmp_path / 'app.db'}"},
        "bulk": {"sync_grace_period_seconds": 0.0, "identity_retry_delay_seconds": 0.0},
        "reconciliation": {"propagation_delay_seconds": 0.0, "verification_delay_seconds": 0.0},
    }))
    return path


@pytest.fixture
def services(authority, config_file, clock):
    services = bootstrap(authority, config_path=config_file, clock=clock, start_reconciliation=False)
    yield services
    services.shutdown(timeout=10)


class TestBootstrap:

    def test_tables_created(self, services, config_file):
        tables = set(inspect(get_engine()).get_table_names())
        assert {"farmers", "bulk_operations", "processing_details"} <= tables
        assert services.session_factory is get_session_factory()
        assert services.config.source == str(config_file)

    def test_submit_and_reconcile(self, services, org_id, make_records):
        handle = services.orchestrator.submit(org_id, "admin-1", InputFormat.JSON, make_records(3))
        op = services.orchestrator.wait(handle.operation_id, timeout=10)

        assert op.status == OperationStatus.COMPLETED
        assert services.registry.count_farmers() == 3
        assert not services.reconciliation.run_now().has_work

    def test_session_scope_uses_module_factory(self, services, org_id, make_records):
        handle = services.orchestrator.submit(org_id, "admin-1", InputFormat.JSON, make_records(2))
        services.orchestrator.wait(handle.operation_id, timeout=10)
        with session_scope() as session:
            assert session.execute(select(func.count()).select_from(FarmerModel)).scalar_one() == 2

    def test_reconciliation_started_when_enabled(self, authority, config_file, clock):
        services = bootstrap(authority, config_path=config_file, clock=clock)
        try:
            assert services.reconciliation.is_running
        finally:
            services.shutdown(timeout=10)
        assert not services.reconciliation.is_running

    def test_shutdown_resets_engine(self, authority, config_file, clock):
        services = bootstrap(authority, config_path=config_file, clock=clock, start_reconciliation=False)
        services.shutdown(timeout=10)
        with pytest.raises(RuntimeError):
            get_session_factory()


def teardown_module():
    reset_engine()
