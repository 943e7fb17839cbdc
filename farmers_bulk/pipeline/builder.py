"""
Stage selection and pipeline assembly.

``select_stages`` is a pure function of the processing options; the
executor builds one pipeline per operation and reuses it for every
record, so the stage set never changes once an operation begins.
"""

from __future__ import annotations

from farmers_config.schema import BulkSettings
from farmers_kernel.clients.identity import IdentityAuthority
from farmers_kernel.services.farmer_registry import FarmerRegistry

from farmers_bulk.domain.types import ProcessingOptions
from farmers_bulk.pipeline import stages as s
from farmers_bulk.pipeline.base import Pipeline, PipelineStage

STAGE_ORDER: tuple[str, ...] = (
    s.VALIDATION,
    s.DEDUPLICATION,
    s.IDENTITY_USER,
    s.FARMER_REGISTRATION,
    s.ROLE_ASSIGNMENT,
    s.ORGANIZATION_LINKAGE,
    s.KISAN_SATHI_ASSIGNMENT,
)


def select_stages(options: ProcessingOptions) -> tuple[str, ...]:
    """Names of the stages to run for ``options``, in execution order."""
    skipped = set()
    if options.skip_duplicate_detection:
        skipped.add(s.DEDUPLICATION)
    if options.skip_role_assignment:
        skipped.add(s.ROLE_ASSIGNMENT)
    if not options.assign_kisan_sathi:
        skipped.add(s.KISAN_SATHI_ASSIGNMENT)
    return tuple(name for name in STAGE_ORDER if name not in skipped)


class PipelineFactory:
    """Builds the registration pipeline for a set of processing options."""

    def __init__(
        self,
        authority: IdentityAuthority,
        registry: FarmerRegistry,
        settings: BulkSettings | None = None,
    ):
        settings = settings or BulkSettings()
        attempts = settings.identity_retry_attempts
        delay = settings.identity_retry_delay_seconds
        self._stages: dict[str, PipelineStage] = {
            s.VALIDATION: s.ValidationStage(),
            s.DEDUPLICATION: s.DeduplicationStage(registry),
            s.IDENTITY_USER: s.IdentityUserStage(authority, attempts, delay),
            s.FARMER_REGISTRATION: s.FarmerRegistrationStage(registry),
            s.ROLE_ASSIGNMENT: s.RoleAssignmentStage(authority, registry, attempts, delay),
            s.ORGANIZATION_LINKAGE: s.OrganizationLinkageStage(
                authority, registry, attempts, delay,
            ),
            s.KISAN_SATHI_ASSIGNMENT: s.KisanSathiAssignmentStage(registry),
        }

    def __call__(self, options: ProcessingOptions) -> Pipeline:
        return Pipeline([self._stages[name] for name in select_stages(options)])
