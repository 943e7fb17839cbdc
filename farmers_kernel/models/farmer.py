"""
ORM models for locally registered farmers and their organization links.

Contract:
    FarmerModel is the primary record checked against the identity
    authority by orphan cleanup.  FarmerLinkModel ties a farmer to an
    organization (FPO) and optionally to a field agent (KisanSathi).

Invariants enforced:
    - ``phone_number`` is unique per organization.
    - Reconciliation flags live in the JSON ``metadata`` column and are
      always written by replacing the whole dict.
"""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from farmers_kernel.db.base import TrackedBase, UUIDString
from farmers_kernel.domain.dtos import FarmerLinkRecord, FarmerRecord


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite returns naive datetimes even for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class FarmerModel(TrackedBase):
    """Local farmer profile backed by an identity-authority user."""

    __tablename__ = "farmers"

    __table_args__ = (
        UniqueConstraint("aaa_org_id", "phone_number", name="uq_farmers_org_phone"),
        Index("ix_farmers_aaa_user_id", "aaa_user_id"),
        Index("ix_farmers_created_at", "created_at"),
    )

    aaa_user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    aaa_org_id: Mapped[str] = mapped_column(String(100), nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    gender: Mapped[str | None] = mapped_column(String(10), nullable=True)
    date_of_birth: Mapped[str | None] = mapped_column(String(20), nullable=True)
    address: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    farmer_metadata: Mapped[dict | None] = mapped_column(
        "metadata", JSON, nullable=True,
    )
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def to_dto(self) -> FarmerRecord:
        return FarmerRecord(
            id=self.id,
            aaa_user_id=self.aaa_user_id,
            aaa_org_id=self.aaa_org_id,
            first_name=self.first_name,
            last_name=self.last_name,
            phone_number=self.phone_number,
            email=self.email,
            gender=self.gender,
            date_of_birth=self.date_of_birth,
            address=dict(self.address or {}),
            metadata=dict(self.farmer_metadata or {}),
            created_by=self.created_by,
            created_at=_as_utc(self.created_at),
        )


class FarmerLinkModel(TrackedBase):
    """Farmer-to-organization link."""

    __tablename__ = "farmer_links"

    __table_args__ = (
        UniqueConstraint("farmer_id", "aaa_org_id", name="uq_farmer_links_farmer_org"),
        Index("ix_farmer_links_org", "aaa_org_id"),
    )

    farmer_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("farmers.id"), nullable=False,
    )
    aaa_user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    aaa_org_id: Mapped[str] = mapped_column(String(100), nullable=False)
    kisan_sathi_user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE")

    def to_dto(self) -> FarmerLinkRecord:
        return FarmerLinkRecord(
            id=self.id,
            farmer_id=self.farmer_id,
            aaa_user_id=self.aaa_user_id,
            aaa_org_id=self.aaa_org_id,
            status=self.status,
            kisan_sathi_user_id=self.kisan_sathi_user_id,
        )
