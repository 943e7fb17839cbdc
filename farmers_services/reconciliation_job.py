"""
ReconciliationJob -- periodic healing of drift between the local farmer
registry and the identity authority.

Contract:
    Every ``interval_seconds`` (default 6 h) a pass runs three sweeps,
    each bounded by ``batch_size``:

    1. Orphan cleanup: farmers whose identity user no longer exists are
       permanently deleted with all their dependents.
    2. Pending role healing: farmers flagged ``role_assignment_pending``
       get the farmer role assigned and verified; the flag is cleared and
       ``role_assignment_fixed_at`` stamped.
    3. Pending link healing: ``fpo_config_link_pending`` is cleared and
       ``fpo_config_link_acknowledged_at`` stamped.

    ``run_now()`` runs one pass synchronously; ``start()`` / ``stop()``
    drive the background loop; ``get_pending_counts()`` reports backlog.
    The loop's first pass runs as soon as ``start()`` is called, not after
    the first interval.

Architecture: farmers_services.  Uses farmers_kernel.services.FarmerRegistry
    for local state and the IdentityAuthority protocol for remote state.

Invariants enforced:
    - At most one pass runs at a time per job instance.
    - Cancellation (caller event or run timeout) is checked before every
      record; in-flight records complete.  The stop signal is the cancel
      event of loop passes only, so ``run_now()`` works after ``stop()``.
    - Idempotent: a second pass over healed state does nothing.
    - All timestamps come from the injected Clock.

Failure modes:
    - ReconciliationAlreadyRunningError from ``run_now()`` while a pass
      is in progress.
    - Per-record failures never abort a pass; they are recorded in the
      report's ``errors`` and the record stays pending.
"""

from __future__ import annotations

import threading
import time

from farmers_config.schema import ReconciliationSettings
from farmers_kernel.clients.identity import ROLE_FARMER, IdentityAuthority
from farmers_kernel.domain.clock import Clock, SystemClock
from farmers_kernel.domain.dtos import FarmerRecord
from farmers_kernel.exceptions import (
    FarmerNotFoundError,
    IdentityNotFoundError,
    ReconciliationAlreadyRunningError,
)
from farmers_kernel.logging_config import LogContext, get_logger
from farmers_kernel.services.farmer_registry import FarmerRegistry

from farmers_services._reconciliation_types import PendingCounts, ReconciliationReport

logger = get_logger("services.reconciliation")

ORPHAN_SWEEP = "orphan cleanup"
ROLE_SWEEP = "role reconciliation"
LINK_SWEEP = "FPO link reconciliation"


class _PassCancelled(Exception):
    def __init__(self, sweep: str):
        super().__init__(sweep)
        self.sweep = sweep


class ReconciliationJob:
    """Background reconciliation of farmer roles, links and orphans.

    Non-goals:
        - NOT distributed; two processes may each run a pass.
        - Does NOT re-create links in the identity authority.
    """

    def __init__(
        self,
        registry: FarmerRegistry,
        authority: IdentityAuthority,
        settings: ReconciliationSettings | None = None,
        clock: Clock | None = None,
    ):
        self._registry = registry
        self._authority = authority
        self._settings = settings or ReconciliationSettings()
        self._clock = clock or SystemClock()
        self._stop_event = threading.Event()
        # Never set; delays of passes without a cancel event wait on it.
        self._pause_event = threading.Event()
        self._run_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._deadline: float | None = None
        self._cancel_event: threading.Event | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def run_now(self, cancel_event: threading.Event | None = None) -> ReconciliationReport:
        """Run one pass synchronously.

        Raises:
            ReconciliationAlreadyRunningError: a pass is already running.
        """
        if not self._run_lock.acquire(blocking=False):
            raise ReconciliationAlreadyRunningError()
        try:
            self._cancel_event = cancel_event
            self._deadline = time.monotonic() + self._settings.run_timeout_seconds
            with LogContext.bind(correlation_id=f"reconcile-{self._clock.now():%Y%m%dT%H%M%S}"):
                return self._reconcile()
        finally:
            self._cancel_event = None
            self._deadline = None
            self._run_lock.release()

    @property
    def is_reconciling(self) -> bool:
        return self._run_lock.locked()

    def get_pending_counts(self) -> PendingCounts:
        return PendingCounts(
            roles_pending=self._registry.count_role_pending(),
            fpo_links_pending=self._registry.count_link_pending(),
        )

    def start(self) -> None:
        """Start the periodic loop in a background thread.  No-op if running."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="farmer-reconciliation",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "reconciliation_job_started",
            extra={"interval_seconds": self._settings.interval_seconds},
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the current record to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("reconciliation_job_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_now(cancel_event=self._stop_event)
            except ReconciliationAlreadyRunningError:
                logger.info("reconciliation_pass_skipped")
            except Exception:
                logger.exception("reconciliation_pass_exception")
            self._stop_event.wait(timeout=self._settings.interval_seconds)

    def _reconcile(self) -> ReconciliationReport:
        start = time.monotonic()
        report = ReconciliationReport(started_at=self._clock.now())

        for sweep, fn in (
            (ORPHAN_SWEEP, self._sweep_orphans),
            (ROLE_SWEEP, self._sweep_roles),
            (LINK_SWEEP, self._sweep_links),
        ):
            try:
                fn(report)
            except _PassCancelled as exc:
                report.errors.append(f"cancelled during {exc.sweep}")
                break
            except Exception as exc:
                logger.exception("reconciliation_sweep_failed", extra={"sweep": sweep})
                report.errors.append(f"{sweep} failed: {exc}")

        report.ended_at = self._clock.now()
        report.duration_ms = int((time.monotonic() - start) * 1000)

        if report.has_work:
            logger.info(
                "reconciliation_completed",
                extra={
                    "duration_ms": report.duration_ms,
                    "roles_processed": report.roles_processed,
                    "roles_fixed": report.roles_fixed,
                    "roles_still_pending": report.roles_still_pending,
                    "orphaned_deleted": report.orphaned_deleted,
                    "fpo_links_processed": report.fpo_links_processed,
                    "fpo_links_fixed": report.fpo_links_fixed,
                    "fpo_links_still_pending": report.fpo_links_still_pending,
                    "errors": len(report.errors),
                },
            )
        return report

    # -------------------------------------------------------------------------
    # Sweeps
    # -------------------------------------------------------------------------

    def _sweep_orphans(self, report: ReconciliationReport) -> None:
        for farmer in self._registry.list_farmers(self._settings.batch_size):
            self._check_cancelled(ORPHAN_SWEEP)
            if not farmer.aaa_user_id:
                continue
            try:
                self._authority.get_user(farmer.aaa_user_id)
            except IdentityNotFoundError:
                if self._delete_orphan(farmer, report):
                    report.orphaned_deleted += 1
            except Exception as exc:
                logger.warning(
                    "orphan_check_skipped",
                    extra={"farmer_id": str(farmer.id), "error": str(exc)},
                )

    def _sweep_roles(self, report: ReconciliationReport) -> None:
        for farmer in self._registry.list_role_pending(self._settings.batch_size):
            self._check_cancelled(ROLE_SWEEP)
            report.roles_processed += 1
            error = self._heal_role(farmer, report)
            if error is None:
                continue
            report.roles_still_pending += 1
            report.errors.append(f"farmer {farmer.id}: {error}")

    def _sweep_links(self, report: ReconciliationReport) -> None:
        for farmer in self._registry.list_link_pending(self._settings.batch_size):
            self._check_cancelled(LINK_SWEEP)
            report.fpo_links_processed += 1
            try:
                self._registry.clear_link_pending(farmer.id)
                report.fpo_links_fixed += 1
            except Exception as exc:
                report.fpo_links_still_pending += 1
                report.errors.append(f"farmer {farmer.id}: link acknowledge failed: {exc}")

    # -------------------------------------------------------------------------
    # Per-record helpers
    # -------------------------------------------------------------------------

    def _heal_role(self, farmer: FarmerRecord, report: ReconciliationReport) -> str | None:
        """Returns an error string, or None when handled (healed, deleted, or
        already reported by ``_delete_orphan``)."""
        user_id = farmer.aaa_user_id
        if not user_id:
            return "farmer has no identity user"
        try:
            self._authority.get_user(user_id)
        except IdentityNotFoundError:
            if self._delete_orphan(farmer, report):
                report.orphaned_deleted += 1
            else:
                # _delete_orphan has already recorded the error
                report.roles_still_pending += 1
            return None
        except Exception as exc:
            return f"user lookup failed: {exc}"

        try:
            has_role = self._authority.check_role(user_id, ROLE_FARMER)
        except Exception as exc:
            return f"role check failed: {exc}"

        if not has_role:
            try:
                self._authority.assign_role(user_id, farmer.aaa_org_id, ROLE_FARMER)
            except Exception as exc:
                return f"role assignment failed: {exc}"
            self._pause(self._settings.propagation_delay_seconds)
            if not self._verify_role(user_id):
                return "role not visible after assignment"

        try:
            self._registry.clear_role_assignment_pending(farmer.id)
        except Exception as exc:
            return f"clearing pending flag failed: {exc}"
        report.roles_fixed += 1
        logger.info(
            "role_assignment_reconciled",
            extra={"farmer_id": str(farmer.id), "already_present": has_role},
        )
        return None

    def _verify_role(self, user_id: str) -> bool:
        for attempt in range(self._settings.verification_attempts):
            try:
                if self._authority.check_role(user_id, ROLE_FARMER):
                    return True
            except Exception as exc:
                logger.warning(
                    "role_verification_failed",
                    extra={"user_id": user_id, "attempt": attempt + 1, "error": str(exc)},
                )
            if attempt + 1 < self._settings.verification_attempts:
                self._pause(self._settings.verification_delay_seconds)
        return False

    def _delete_orphan(self, farmer: FarmerRecord, report: ReconciliationReport) -> bool:
        try:
            self._registry.permanently_delete_farmer(farmer.id)
        except FarmerNotFoundError:
            return False
        except Exception as exc:
            logger.exception("orphan_delete_failed", extra={"farmer_id": str(farmer.id)})
            report.errors.append(f"farmer {farmer.id}: orphan delete failed: {exc}")
            return False
        logger.info(
            "orphaned_farmer_deleted",
            extra={"farmer_id": str(farmer.id), "aaa_user_id": farmer.aaa_user_id},
        )
        return True

    def _pause(self, seconds: float) -> None:
        (self._cancel_event or self._pause_event).wait(seconds)

    def _check_cancelled(self, sweep: str) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise _PassCancelled(sweep)
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise _PassCancelled(sweep)
