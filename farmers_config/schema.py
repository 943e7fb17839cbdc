"""
Runtime configuration schema.

Frozen dataclasses produced by ``farmers_config.loader`` from YAML.
Defaults here mirror ``defaults.yaml`` so that code constructing settings
directly (tests, scripts) gets production behavior.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Bulk engine
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BulkSettings:
    """Tuning for the bulk operation engine."""

    max_sync_records: int = 100  # At or below this count, run inline
    default_chunk_size: int = 100
    max_concurrency: int = 10  # Chunks executing at once
    max_retries: int = 3  # Per-record retry ceiling
    progress_flush_interval_seconds: float = 1.0
    progress_queue_capacity: int = 1000
    sync_progress_every: int = 10  # Inline path flush cadence (records)
    sync_grace_threshold: int = 10
    sync_grace_period_seconds: float = 0.1
    identity_retry_attempts: int = 3
    identity_retry_delay_seconds: float = 0.2
    status_url_template: str = "/api/v1/bulk/status/{operation_id}"
    result_url_template: str = "/api/v1/bulk/results/{operation_id}"


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReconciliationSettings:
    """Tuning for the periodic reconciliation job."""

    enabled: bool = True
    interval_seconds: float = 6 * 60 * 60
    batch_size: int = 100
    run_timeout_seconds: float = 120.0
    verification_attempts: int = 3
    propagation_delay_seconds: float = 0.5
    verification_delay_seconds: float = 0.2


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = "sqlite:///farmers.db"
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"


@dataclass(frozen=True)
class FarmersConfig:
    """Complete runtime configuration."""

    bulk: BulkSettings = field(default_factory=BulkSettings)
    reconciliation: ReconciliationSettings = field(default_factory=ReconciliationSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    source: str | None = None  # Path of the overlay file, if any
