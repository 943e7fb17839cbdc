"""
farmers_config -- single public entrypoint for runtime configuration.

Responsibility:
    ``get_active_config()`` is the only way services obtain configuration.
    It loads the packaged ``defaults.yaml`` and overlays an optional
    deployment file on top of it.

Architecture position:
    Sits beside ``farmers_kernel``; the kernel never imports from here.
    ``farmers_bulk`` and ``farmers_services`` receive settings objects by
    constructor injection.

Failure modes:
    - ``FileNotFoundError`` -- overlay path does not exist.
    - ``ValueError`` -- unknown keys or invalid values.

Every successful call emits a ``farmers_config_loaded`` log entry naming
the overlay source and the effective bulk/reconciliation limits.
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

from farmers_config.loader import load_yaml_file, parse_config
from farmers_config.schema import (
    BulkSettings,
    DatabaseSettings,
    FarmersConfig,
    LoggingSettings,
    ReconciliationSettings,
)
from farmers_kernel.logging_config import get_logger

_logger = get_logger("config")

_DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(config_path: Path | str | None = None) -> FarmersConfig:
    """Return the effective configuration.

    Args:
        config_path: Optional YAML overlay.  Keys it sets replace the
            packaged defaults; keys it omits keep them.
    """
    config = parse_config(load_yaml_file(_DEFAULTS_PATH))

    if config_path is not None:
        path = Path(config_path)
        config = parse_config(load_yaml_file(path), base=config)
        config = replace(config, source=str(path))

    _logger.info(
        "farmers_config_loaded",
        extra={
            "source": config.source or "defaults",
            "max_sync_records": config.bulk.max_sync_records,
            "chunk_size": config.bulk.default_chunk_size,
            "max_concurrency": config.bulk.max_concurrency,
            "reconciliation_interval_seconds": config.reconciliation.interval_seconds,
        },
    )
    return config


__all__ = [
    "get_active_config",
    "FarmersConfig",
    "BulkSettings",
    "ReconciliationSettings",
    "DatabaseSettings",
    "LoggingSettings",
]
