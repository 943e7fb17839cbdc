"""SQLAlchemy ORM models for the local farmer registry."""

from farmers_kernel.models.farm import CropCycleModel, FarmActivityModel, FarmModel
from farmers_kernel.models.farmer import FarmerLinkModel, FarmerModel

__all__ = [
    "FarmerModel",
    "FarmerLinkModel",
    "FarmModel",
    "CropCycleModel",
    "FarmActivityModel",
]
