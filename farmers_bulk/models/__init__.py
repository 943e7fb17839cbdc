"""SQLAlchemy ORM models for the bulk engine."""

from farmers_bulk.models.bulk import BulkOperationModel, ProcessingDetailModel

__all__ = ["BulkOperationModel", "ProcessingDetailModel"]
