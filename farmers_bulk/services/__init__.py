"""Bulk engine services: store, progress aggregation, execution, retry."""

from farmers_bulk.services.executor import BulkExecutor
from farmers_bulk.services.progress import ProgressAggregator
from farmers_bulk.services.retry import RetryService
from farmers_bulk.services.store import OperationStore, SqlOperationStore

__all__ = [
    "BulkExecutor",
    "ProgressAggregator",
    "RetryService",
    "OperationStore",
    "SqlOperationStore",
]
