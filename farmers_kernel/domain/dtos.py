"""
Data Transfer Objects for the local farmer registry.

Immutable snapshots handed out by FarmerRegistry so that callers never
hold ORM instances across session boundaries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

# Metadata keys used to hand work to the reconciliation job.
ROLE_PENDING_KEY = "role_assignment_pending"
ROLE_ERROR_KEY = "role_assignment_error"
ROLE_ATTEMPTED_AT_KEY = "role_assignment_attempted_at"
ROLE_FIXED_AT_KEY = "role_assignment_fixed_at"
LINK_PENDING_KEY = "fpo_config_link_pending"
LINK_ACKNOWLEDGED_AT_KEY = "fpo_config_link_acknowledged_at"


@dataclass(frozen=True)
class FarmerRecord:
    """Snapshot of a locally registered farmer."""

    id: UUID
    aaa_user_id: str
    aaa_org_id: str
    first_name: str
    last_name: str
    phone_number: str
    email: str | None = None
    gender: str | None = None
    date_of_birth: str | None = None
    address: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_by: str | None = None
    created_at: datetime | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def role_assignment_pending(self) -> bool:
        return bool(self.metadata.get(ROLE_PENDING_KEY))

    @property
    def link_pending(self) -> bool:
        return bool(self.metadata.get(LINK_PENDING_KEY))


@dataclass(frozen=True)
class FarmerLinkRecord:
    """Snapshot of a farmer-to-organization link."""

    id: UUID
    farmer_id: UUID
    aaa_user_id: str
    aaa_org_id: str
    status: str
    kisan_sathi_user_id: str | None = None
