"""
ORM models for farms and their dependent records.

Ownership hierarchy (delete children before parents):
    FarmerModel -> FarmModel -> {FarmActivityModel, CropCycleModel}
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import Float, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from farmers_kernel.db.base import TrackedBase, UUIDString


class FarmModel(TrackedBase):
    """A parcel of land owned by a farmer."""

    __tablename__ = "farms"

    __table_args__ = (Index("ix_farms_farmer_id", "farmer_id"),)

    farmer_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("farmers.id"), nullable=False,
    )
    farm_name: Mapped[str] = mapped_column(String(200), nullable=False)
    area_hectares: Mapped[float | None] = mapped_column(Float, nullable=True)


class CropCycleModel(TrackedBase):
    """One crop season on a farm."""

    __tablename__ = "crop_cycles"

    __table_args__ = (Index("ix_crop_cycles_farm_id", "farm_id"),)

    farm_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("farms.id"), nullable=False,
    )
    crop_name: Mapped[str] = mapped_column(String(100), nullable=False)
    season: Mapped[str | None] = mapped_column(String(50), nullable=True)


class FarmActivityModel(TrackedBase):
    """A field activity (sowing, irrigation, harvest) recorded on a farm."""

    __tablename__ = "farm_activities"

    __table_args__ = (Index("ix_farm_activities_farm_id", "farm_id"),)

    farm_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("farms.id"), nullable=False,
    )
    activity_type: Mapped[str] = mapped_column(String(50), nullable=False)
