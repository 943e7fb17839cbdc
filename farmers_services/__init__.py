"""Stateful background services built on the farmer registry."""

from farmers_services._reconciliation_types import PendingCounts, ReconciliationReport
from farmers_services.bootstrap import Services, bootstrap
from farmers_services.reconciliation_job import ReconciliationJob

__all__ = [
    "PendingCounts",
    "ReconciliationJob",
    "ReconciliationReport",
    "Services",
    "bootstrap",
]
