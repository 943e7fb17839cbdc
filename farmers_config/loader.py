"""
Configuration Loader (``farmers_config.loader``).

Responsibility
--------------
Loads YAML files and parses them into the frozen dataclasses of
``farmers_config.schema``.  Runtime callers use
``farmers_config.get_active_config()`` rather than this module.

Invariants enforced
-------------------
* Unknown keys are rejected with ``ValueError`` so that typos in a
  deployment overlay fail loudly instead of being ignored.
* Numeric settings are range-checked (sizes and counts >= 1, delays >= 0).

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid values or unknown keys  -> ``ValueError``.
"""

from __future__ import annotations

from dataclasses import fields, replace
from pathlib import Path
from typing import Any, TypeVar

import yaml

from farmers_config.schema import (
    BulkSettings,
    DatabaseSettings,
    FarmersConfig,
    LoggingSettings,
    ReconciliationSettings,
)

S = TypeVar("S")

_POSITIVE_INTS = {
    "max_sync_records",
    "default_chunk_size",
    "max_concurrency",
    "progress_queue_capacity",
    "sync_progress_every",
    "identity_retry_attempts",
    "batch_size",
    "verification_attempts",
}
_NON_NEGATIVE = {
    "max_retries",
    "sync_grace_threshold",
    "sync_grace_period_seconds",
    "identity_retry_delay_seconds",
    "propagation_delay_seconds",
    "verification_delay_seconds",
}
_POSITIVE_FLOATS = {
    "progress_flush_interval_seconds",
    "interval_seconds",
    "run_timeout_seconds",
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level YAML value must be a mapping")
    return data


def _apply(section: str, base: S, data: dict[str, Any] | None) -> S:
    if not data:
        return base
    if not isinstance(data, dict):
        raise ValueError(f"{section}: expected a mapping, got {type(data).__name__}")

    known = {f.name: f for f in fields(base)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ValueError(f"{section}: unknown keys {unknown}")

    for key, value in data.items():
        if key in _POSITIVE_INTS and (not isinstance(value, int) or value < 1):
            raise ValueError(f"{section}.{key} must be a positive integer, got {value!r}")
        if key in _NON_NEGATIVE and (not isinstance(value, (int, float)) or value < 0):
            raise ValueError(f"{section}.{key} must be >= 0, got {value!r}")
        if key in _POSITIVE_FLOATS and (not isinstance(value, (int, float)) or value <= 0):
            raise ValueError(f"{section}.{key} must be > 0, got {value!r}")
    return replace(base, **data)


def parse_bulk(data: dict[str, Any] | None, base: BulkSettings | None = None) -> BulkSettings:
    return _apply("bulk", base or BulkSettings(), data)


def parse_reconciliation(
    data: dict[str, Any] | None,
    base: ReconciliationSettings | None = None,
) -> ReconciliationSettings:
    return _apply("reconciliation", base or ReconciliationSettings(), data)


def parse_database(data: dict[str, Any] | None, base: DatabaseSettings | None = None) -> DatabaseSettings:
    return _apply("database", base or DatabaseSettings(), data)


def parse_logging(data: dict[str, Any] | None, base: LoggingSettings | None = None) -> LoggingSettings:
    settings = _apply("logging", base or LoggingSettings(), data)
    if settings.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ValueError(f"logging.level is not a valid level: {settings.level!r}")
    return replace(settings, level=settings.level.upper())


def parse_config(data: dict[str, Any], base: FarmersConfig | None = None) -> FarmersConfig:
    """
    Parse a complete ``FarmersConfig`` from a dict, overlaying ``base``.

    Raises:
        ValueError: unknown sections, unknown keys, or invalid values.
    """
    base = base or FarmersConfig()
    unknown = sorted(set(data) - {"bulk", "reconciliation", "database", "logging"})
    if unknown:
        raise ValueError(f"unknown configuration sections {unknown}")

    return FarmersConfig(
        bulk=parse_bulk(data.get("bulk"), base.bulk),
        reconciliation=parse_reconciliation(data.get("reconciliation"), base.reconciliation),
        database=parse_database(data.get("database"), base.database),
        logging=parse_logging(data.get("logging"), base.logging),
        source=base.source,
    )
