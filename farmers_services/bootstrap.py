"""
Process wiring: configuration -> logging -> database -> services.

A host process (web app, worker, CLI) calls ``bootstrap()`` once at start
and ``Services.shutdown()`` on exit.  The identity authority client is
supplied by the host; nothing here knows how it talks to the network.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.orm import Session, sessionmaker

from farmers_config import get_active_config
from farmers_config.schema import FarmersConfig
from farmers_kernel.clients.identity import IdentityAuthority
from farmers_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from farmers_kernel.domain.clock import Clock, SystemClock
from farmers_kernel.logging_config import configure_logging, get_logger
from farmers_kernel.services.farmer_registry import FarmerRegistry

from farmers_bulk.orchestrator import BulkOrchestrator
from farmers_services.reconciliation_job import ReconciliationJob

logger = get_logger("services.bootstrap")


@dataclass
class Services:
    config: FarmersConfig
    session_factory: sessionmaker[Session]
    registry: FarmerRegistry
    orchestrator: BulkOrchestrator
    reconciliation: ReconciliationJob

    def shutdown(self, timeout: float = 30.0) -> None:
        self.reconciliation.stop(timeout=timeout)
        self.orchestrator.shutdown(timeout=timeout)
        reset_engine()
        logger.info("services_shutdown")


def bootstrap(
    authority: IdentityAuthority,
    config_path: Path | str | None = None,
    config: FarmersConfig | None = None,
    clock: Clock | None = None,
    start_reconciliation: bool | None = None,
) -> Services:
    """Build every service from configuration.

    ``start_reconciliation`` defaults to ``config.reconciliation.enabled``.
    """
    config = config or get_active_config(config_path)
    clock = clock or SystemClock()

    configure_logging(level=config.logging.level)
    init_engine_from_url(
        config.database.url,
        echo=config.database.echo,
        pool_size=config.database.pool_size,
        max_overflow=config.database.max_overflow,
    )
    create_tables()
    session_factory = get_session_factory()

    registry = FarmerRegistry(session_factory, clock=clock)
    services = Services(
        config=config,
        session_factory=session_factory,
        registry=registry,
        orchestrator=BulkOrchestrator.from_session_factory(
            session_factory, authority, settings=config.bulk, clock=clock,
        ),
        reconciliation=ReconciliationJob(
            registry, authority, settings=config.reconciliation, clock=clock,
        ),
    )

    if start_reconciliation is None:
        start_reconciliation = config.reconciliation.enabled
    if start_reconciliation:
        services.reconciliation.start()

    logger.info(
        "services_started",
        extra={
            "database": config.database.url.split("://", 1)[0],
            "reconciliation_started": start_reconciliation,
        },
    )
    return services
