"""
farmers_services._reconciliation_types -- reports produced by the
reconciliation job.

ReconciliationReport is filled in while a pass runs, so unlike the
kernel DTOs it is a mutable dataclass.  It is returned to the caller and
never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class ReconciliationReport:
    """Outcome of one reconciliation pass."""

    started_at: datetime
    ended_at: datetime | None = None
    duration_ms: int = 0

    roles_processed: int = 0
    roles_fixed: int = 0
    roles_still_pending: int = 0

    orphaned_deleted: int = 0

    fpo_links_processed: int = 0
    fpo_links_fixed: int = 0
    fpo_links_still_pending: int = 0

    errors: list[str] = field(default_factory=list)

    @property
    def has_work(self) -> bool:
        return bool(
            self.roles_processed
            or self.orphaned_deleted
            or self.fpo_links_processed
            or self.errors
        )

    @property
    def cancelled(self) -> bool:
        return any(e.startswith("cancelled during") for e in self.errors)


@dataclass(frozen=True)
class PendingCounts:
    roles_pending: int
    fpo_links_pending: int
