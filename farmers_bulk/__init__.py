"""
farmers_bulk -- Bulk farmer registration engine.

Accepts a batch of farmer records, runs each through a staged pipeline
(validation, deduplication, identity user, farmer registration, role
assignment, organization linkage), tracks per-record and aggregate
progress, and supports targeted retry of transient failures.

Architecture:
    farmers_bulk/ is a top-level package.  It depends on farmers_kernel
    and receives farmers_config settings by injection.  Nothing in
    farmers_kernel imports from farmers_bulk.

    domain/      pure DTOs, lifecycle rules, validation
    models/      ORM models for operations and processing details
    pipeline/    stage protocol, stage implementations, stage selection
    services/    operation store, progress aggregator, executor, retry
    orchestrator.py  public entrypoint (submit, status, cancel, retry)
"""
