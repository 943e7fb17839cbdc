"""
FarmerRegistry -- local persistence for farmers, links, and farms.

Responsibility:
    Owns every read and write of the local farmer registry: registration
    (used by pipeline stages), reconciliation flag maintenance, bounded
    scans for the reconciliation sweeps, and the permanent cascading
    delete used by orphan cleanup.

Architecture position:
    Kernel > Services.  Thread-safe: each public method opens its own
    session from the injected session factory, so the registry may be
    shared by chunk workers and the reconciliation thread.

Invariants enforced:
    - Permanent deletion is atomic.  Dependents are removed child-first
      (farm activities, crop cycles, farms, farmer links, farmer) inside
      one transaction; any failure rolls the whole delete back.
    - Metadata flags are updated by replacing the JSON dict, never by
      in-place mutation.

Failure modes:
    - FarmerNotFoundError for unknown farmer ids.
    - DuplicateRecordError when (org, phone) is already registered.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from farmers_kernel.db.engine import transactional_scope
from farmers_kernel.domain.clock import Clock, SystemClock
from farmers_kernel.domain.dtos import (
    LINK_ACKNOWLEDGED_AT_KEY,
    LINK_PENDING_KEY,
    ROLE_ATTEMPTED_AT_KEY,
    ROLE_ERROR_KEY,
    ROLE_FIXED_AT_KEY,
    ROLE_PENDING_KEY,
    FarmerLinkRecord,
    FarmerRecord,
)
from farmers_kernel.exceptions import DuplicateRecordError, FarmerNotFoundError
from farmers_kernel.logging_config import get_logger
from farmers_kernel.models.farm import (
    CropCycleModel,
    FarmActivityModel,
    FarmModel,
)
from farmers_kernel.models.farmer import FarmerLinkModel, FarmerModel

logger = get_logger("services.farmer_registry")


class FarmerRegistry:
    """Local farmer registry.

    Contract:
        - Registration: ``create_farmer``, ``link_farmer_to_organization``,
          ``assign_kisan_sathi``.
        - Flags: ``mark_role_assignment_pending`` / ``clear_role_assignment_pending``,
          ``mark_link_pending`` / ``clear_link_pending``.
        - Scans: ``list_farmers``, ``list_role_pending``, ``list_link_pending``
          (all bounded by ``limit``) and their ``count_*`` siblings.
        - Cleanup: ``permanently_delete_farmer``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def find_by_phone(self, org_id: str, phone_number: str) -> FarmerRecord | None:
        with transactional_scope(self._session_factory) as session:
            model = session.execute(
                select(FarmerModel).where(
                    FarmerModel.aaa_org_id == org_id,
                    FarmerModel.phone_number == phone_number,
                )
            ).scalar_one_or_none()
            return model.to_dto() if model is not None else None

    def get_farmer(self, farmer_id: UUID) -> FarmerRecord:
        with transactional_scope(self._session_factory) as session:
            return self._load(session, farmer_id).to_dto()

    def create_farmer(
        self,
        *,
        aaa_user_id: str,
        aaa_org_id: str,
        first_name: str,
        last_name: str,
        phone_number: str,
        email: str | None = None,
        gender: str | None = None,
        date_of_birth: str | None = None,
        address: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        created_by: str | None = None,
    ) -> FarmerRecord:
        """Insert a farmer profile.

        Raises:
            DuplicateRecordError: (org, phone) already registered.
        """
        model = FarmerModel(
            aaa_user_id=aaa_user_id,
            aaa_org_id=aaa_org_id,
            first_name=first_name,
            last_name=last_name,
            phone_number=phone_number,
            email=email,
            gender=gender,
            date_of_birth=date_of_birth,
            address=dict(address) if address else None,
            farmer_metadata=dict(metadata) if metadata else {},
            created_by=created_by,
        )
        try:
            with transactional_scope(self._session_factory) as session:
                session.add(model)
                session.flush()
                dto = model.to_dto()
        except IntegrityError:
            existing = self.find_by_phone(aaa_org_id, phone_number)
            raise DuplicateRecordError(
                phone_number, str(existing.id) if existing else "unknown",
            )

        logger.info(
            "farmer_created",
            extra={
                "farmer_id": str(dto.id),
                "aaa_user_id": aaa_user_id,
                "aaa_org_id": aaa_org_id,
            },
        )
        return dto

    def link_farmer_to_organization(
        self,
        farmer_id: UUID,
        aaa_user_id: str,
        org_id: str,
    ) -> FarmerLinkRecord:
        """Create the farmer->organization link (idempotent)."""
        with transactional_scope(self._session_factory) as session:
            existing = session.execute(
                select(FarmerLinkModel).where(
                    FarmerLinkModel.farmer_id == farmer_id,
                    FarmerLinkModel.aaa_org_id == org_id,
                )
            ).scalar_one_or_none()
            if existing is not None:
                return existing.to_dto()

            link = FarmerLinkModel(
                farmer_id=farmer_id,
                aaa_user_id=aaa_user_id,
                aaa_org_id=org_id,
                status="ACTIVE",
            )
            session.add(link)
            session.flush()
            return link.to_dto()

    def assign_kisan_sathi(
        self,
        link_id: UUID,
        kisan_sathi_user_id: str,
    ) -> FarmerLinkRecord:
        with transactional_scope(self._session_factory) as session:
            link = session.get(FarmerLinkModel, link_id)
            if link is None:
                raise FarmerNotFoundError(str(link_id))
            link.kisan_sathi_user_id = kisan_sathi_user_id
            session.flush()
            return link.to_dto()

    def get_links(self, farmer_id: UUID) -> tuple[FarmerLinkRecord, ...]:
        with transactional_scope(self._session_factory) as session:
            links = session.execute(
                select(FarmerLinkModel).where(FarmerLinkModel.farmer_id == farmer_id)
            ).scalars().all()
            return tuple(link.to_dto() for link in links)

    def add_farm(
        self,
        farmer_id: UUID,
        farm_name: str,
        area_hectares: float | None = None,
    ) -> UUID:
        with transactional_scope(self._session_factory) as session:
            farm = FarmModel(
                farmer_id=farmer_id,
                farm_name=farm_name,
                area_hectares=area_hectares,
            )
            session.add(farm)
            session.flush()
            return farm.id

    def add_crop_cycle(self, farm_id: UUID, crop_name: str, season: str | None = None) -> UUID:
        with transactional_scope(self._session_factory) as session:
            cycle = CropCycleModel(farm_id=farm_id, crop_name=crop_name, season=season)
            session.add(cycle)
            session.flush()
            return cycle.id

    def add_farm_activity(self, farm_id: UUID, activity_type: str) -> UUID:
        with transactional_scope(self._session_factory) as session:
            activity = FarmActivityModel(farm_id=farm_id, activity_type=activity_type)
            session.add(activity)
            session.flush()
            return activity.id

    # -------------------------------------------------------------------------
    # Reconciliation flags
    # -------------------------------------------------------------------------

    def mark_role_assignment_pending(self, farmer_id: UUID, error: str) -> FarmerRecord:
        return self._update_metadata(
            farmer_id,
            set_keys={
                ROLE_PENDING_KEY: True,
                ROLE_ERROR_KEY: error,
                ROLE_ATTEMPTED_AT_KEY: self._clock.isoformat(),
            },
        )

    def clear_role_assignment_pending(self, farmer_id: UUID) -> FarmerRecord:
        return self._update_metadata(
            farmer_id,
            set_keys={ROLE_FIXED_AT_KEY: self._clock.isoformat()},
            remove_keys=(ROLE_PENDING_KEY, ROLE_ERROR_KEY, ROLE_ATTEMPTED_AT_KEY),
        )

    def mark_link_pending(self, farmer_id: UUID) -> FarmerRecord:
        return self._update_metadata(farmer_id, set_keys={LINK_PENDING_KEY: True})

    def clear_link_pending(self, farmer_id: UUID) -> FarmerRecord:
        return self._update_metadata(
            farmer_id,
            set_keys={LINK_ACKNOWLEDGED_AT_KEY: self._clock.isoformat()},
            remove_keys=(LINK_PENDING_KEY,),
        )

    # -------------------------------------------------------------------------
    # Bounded scans
    # -------------------------------------------------------------------------

    def list_farmers(self, limit: int) -> tuple[FarmerRecord, ...]:
        return self._scan(None, limit)

    def list_role_pending(self, limit: int) -> tuple[FarmerRecord, ...]:
        return self._scan(ROLE_PENDING_KEY, limit)

    def list_link_pending(self, limit: int) -> tuple[FarmerRecord, ...]:
        return self._scan(LINK_PENDING_KEY, limit)

    def count_farmers(self) -> int:
        return self._count(None)

    def count_role_pending(self) -> int:
        return self._count(ROLE_PENDING_KEY)

    def count_link_pending(self) -> int:
        return self._count(LINK_PENDING_KEY)

    # -------------------------------------------------------------------------
    # Permanent deletion
    # -------------------------------------------------------------------------

    def permanently_delete_farmer(self, farmer_id: UUID) -> dict[str, int]:
        """Delete a farmer and all of its dependents in one transaction.

        Returns per-table deleted row counts.

        Raises:
            FarmerNotFoundError: farmer does not exist (nothing deleted).
        """
        with transactional_scope(self._session_factory) as session:
            self._load(session, farmer_id)
            farm_ids = list(
                session.execute(
                    select(FarmModel.id).where(FarmModel.farmer_id == farmer_id)
                ).scalars()
            )
            counts = self._delete_farm_children(session, farm_ids)
            counts["farms"] = self._delete_farms(session, farmer_id)
            counts["farmer_links"] = self._delete_links(session, farmer_id)
            counts["farmers"] = self._delete_farmer(session, farmer_id)

        logger.info(
            "farmer_permanently_deleted",
            extra={"farmer_id": str(farmer_id), "deleted": counts},
        )
        return counts

    def _delete_farm_children(self, session: Session, farm_ids: list[UUID]) -> dict[str, int]:
        if not farm_ids:
            return {"farm_activities": 0, "crop_cycles": 0}
        activities = session.execute(
            delete(FarmActivityModel).where(FarmActivityModel.farm_id.in_(farm_ids))
        ).rowcount
        cycles = session.execute(
            delete(CropCycleModel).where(CropCycleModel.farm_id.in_(farm_ids))
        ).rowcount
        return {"farm_activities": activities, "crop_cycles": cycles}

    def _delete_farms(self, session: Session, farmer_id: UUID) -> int:
        return session.execute(
            delete(FarmModel).where(FarmModel.farmer_id == farmer_id)
        ).rowcount

    def _delete_links(self, session: Session, farmer_id: UUID) -> int:
        return session.execute(
            delete(FarmerLinkModel).where(FarmerLinkModel.farmer_id == farmer_id)
        ).rowcount

    def _delete_farmer(self, session: Session, farmer_id: UUID) -> int:
        return session.execute(
            delete(FarmerModel).where(FarmerModel.id == farmer_id)
        ).rowcount

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _load(session: Session, farmer_id: UUID) -> FarmerModel:
        model = session.get(FarmerModel, farmer_id)
        if model is None:
            raise FarmerNotFoundError(str(farmer_id))
        return model

    def _update_metadata(
        self,
        farmer_id: UUID,
        set_keys: dict[str, Any],
        remove_keys: Iterable[str] = (),
    ) -> FarmerRecord:
        with transactional_scope(self._session_factory) as session:
            model = self._load(session, farmer_id)
            metadata = dict(model.farmer_metadata or {})
            for key in remove_keys:
                metadata.pop(key, None)
            metadata.update(set_keys)
            model.farmer_metadata = metadata
            session.flush()
            return model.to_dto()

    def _scan(self, flag_key: str | None, limit: int) -> tuple[FarmerRecord, ...]:
        stmt = select(FarmerModel)
        if flag_key is not None:
            stmt = stmt.where(FarmerModel.farmer_metadata[flag_key].as_boolean() == True)  # noqa: E712
        stmt = stmt.order_by(FarmerModel.created_at, FarmerModel.id).limit(limit)
        with transactional_scope(self._session_factory) as session:
            return tuple(m.to_dto() for m in session.execute(stmt).scalars())

    def _count(self, flag_key: str | None) -> int:
        stmt = select(func.count()).select_from(FarmerModel)
        if flag_key is not None:
            stmt = stmt.where(FarmerModel.farmer_metadata[flag_key].as_boolean() == True)  # noqa: E712
        with transactional_scope(self._session_factory) as session:
            return session.execute(stmt).scalar_one()
