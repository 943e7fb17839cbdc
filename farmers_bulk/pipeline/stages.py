"""
Pipeline stage implementations for farmer registration.

Order (see ``farmers_bulk.pipeline.builder``):
    validation -> deduplication -> identity_user -> farmer_registration
    -> role_assignment -> organization_linkage -> kisan_sathi_assignment

Results published into the context:
    validation            {"phone_number"}           normalized mobile
    identity_user         {"aaa_user_id", "user_existed"}
    deduplication         {"duplicate"} plus {"resumed_farmer_id"} on resume
    farmer_registration   {"farmer_id"} plus {"farmer_existed"} on resume
    role_assignment       {"role_assigned", "role_assignment_pending"}
    organization_linkage  {"link_id", "link_pending"}
    kisan_sathi_assignment {"kisan_sathi_user_id"} or {"skipped", "reason"}

Role assignment and organization verification degrade instead of failing
on transient identity errors: the farmer is flagged in its metadata and
the reconciliation job finishes the work later.

A retried record may find the farmer saved by an earlier attempt in its
retry lineage (``ProcessingContext.resume_from``).  That farmer is reused
rather than rejected as a duplicate, and the remaining stages run again.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from farmers_kernel.clients.identity import (
    ROLE_FARMER,
    CreateUserRequest,
    IdentityAuthority,
    call_with_retries,
    is_transient,
)
from farmers_kernel.domain.dtos import FarmerRecord
from farmers_kernel.exceptions import DuplicateRecordError
from farmers_kernel.logging_config import get_logger
from farmers_kernel.services.farmer_registry import FarmerRegistry

from farmers_bulk.domain.validation import check_record, normalize_phone
from farmers_bulk.pipeline.base import ProcessingContext

logger = get_logger("bulk.stages")

VALIDATION = "validation"
DEDUPLICATION = "deduplication"
IDENTITY_USER = "identity_user"
FARMER_REGISTRATION = "farmer_registration"
ROLE_ASSIGNMENT = "role_assignment"
ORGANIZATION_LINKAGE = "organization_linkage"
KISAN_SATHI_ASSIGNMENT = "kisan_sathi_assignment"


def _phone(context: ProcessingContext) -> str:
    return context.result(VALIDATION).get("phone_number") or normalize_phone(
        context.record.get("phone_number")
    )


def _resumable(context: ProcessingContext, farmer: FarmerRecord) -> bool:
    return farmer.metadata.get("bulk_operation_id") in context.resume_from


def _text(record: dict[str, Any], key: str) -> str | None:
    value = record.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class ValidationStage:
    name = VALIDATION

    def run(self, context: ProcessingContext) -> dict[str, Any]:
        check_record(context.record)
        return {"phone_number": normalize_phone(context.record.get("phone_number"))}


class DeduplicationStage:
    """Rejects a record whose phone is already registered in the organization."""

    name = DEDUPLICATION

    def __init__(self, registry: FarmerRegistry):
        self._registry = registry

    def run(self, context: ProcessingContext) -> dict[str, Any]:
        phone = _phone(context)
        existing = self._registry.find_by_phone(context.org_id, phone)
        if existing is not None:
            if _resumable(context, existing):
                return {"duplicate": False, "resumed_farmer_id": str(existing.id)}
            raise DuplicateRecordError(phone, str(existing.id))
        return {"duplicate": False}


class IdentityUserStage:
    """Reuses the identity user registered with the mobile number, or creates one."""

    name = IDENTITY_USER

    def __init__(
        self,
        authority: IdentityAuthority,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 0.2,
    ):
        self._authority = authority
        self._attempts = retry_attempts
        self._delay = retry_delay_seconds

    def run(self, context: ProcessingContext) -> dict[str, Any]:
        phone = _phone(context)
        existing = call_with_retries(
            lambda: self._authority.find_user_by_mobile(phone),
            operation="find_user_by_mobile",
            attempts=self._attempts,
            delay_seconds=self._delay,
        )
        if existing is not None:
            return {"aaa_user_id": existing.id, "user_existed": True}

        record = context.record
        full_name = " ".join(
            part for part in (_text(record, "first_name"), _text(record, "last_name")) if part
        )
        request = CreateUserRequest(
            username=f"farmer_{phone}",
            phone_number=phone,
            full_name=full_name,
            email=_text(record, "email"),
        )
        user = call_with_retries(
            lambda: self._authority.create_user(request),
            operation="create_user",
            attempts=self._attempts,
            delay_seconds=self._delay,
        )
        return {"aaa_user_id": user.id, "user_existed": False}


class FarmerRegistrationStage:
    name = FARMER_REGISTRATION

    def __init__(self, registry: FarmerRegistry):
        self._registry = registry

    def run(self, context: ProcessingContext) -> dict[str, Any]:
        user_id = context.result(IDENTITY_USER)["aaa_user_id"]
        if context.resume_from:
            existing = self._registry.find_by_phone(context.org_id, _phone(context))
            if (
                existing is not None
                and _resumable(context, existing)
                and existing.aaa_user_id == user_id
            ):
                logger.info(
                    "farmer_registration_resumed",
                    extra={
                        "farmer_id": str(existing.id),
                        "record_index": context.record_index,
                    },
                )
                return {"farmer_id": str(existing.id), "farmer_existed": True}

        record = context.record
        address = record.get("address")
        farmer = self._registry.create_farmer(
            aaa_user_id=user_id,
            aaa_org_id=context.org_id,
            first_name=_text(record, "first_name") or "",
            last_name=_text(record, "last_name") or "",
            phone_number=_phone(context),
            email=_text(record, "email"),
            gender=(_text(record, "gender") or "").lower() or None,
            date_of_birth=_text(record, "date_of_birth"),
            address=address if isinstance(address, dict) else None,
            metadata={
                "bulk_operation_id": str(context.operation_id),
                "bulk_record_index": context.record_index,
            },
            created_by=context.initiated_by,
        )
        return {"farmer_id": str(farmer.id)}


class RoleAssignmentStage:
    """Assigns the farmer role; transient failures leave the farmer flagged pending."""

    name = ROLE_ASSIGNMENT

    def __init__(
        self,
        authority: IdentityAuthority,
        registry: FarmerRegistry,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 0.2,
    ):
        self._authority = authority
        self._registry = registry
        self._attempts = retry_attempts
        self._delay = retry_delay_seconds

    def run(self, context: ProcessingContext) -> dict[str, Any]:
        user_id = context.result(IDENTITY_USER)["aaa_user_id"]
        farmer_id = UUID(context.result(FARMER_REGISTRATION)["farmer_id"])
        try:
            call_with_retries(
                lambda: self._authority.assign_role(user_id, context.org_id, ROLE_FARMER),
                operation="assign_role",
                attempts=self._attempts,
                delay_seconds=self._delay,
            )
        except Exception as exc:
            if not is_transient(exc):
                raise
            self._registry.mark_role_assignment_pending(farmer_id, str(exc))
            logger.warning(
                "role_assignment_deferred",
                extra={
                    "farmer_id": str(farmer_id),
                    "aaa_user_id": user_id,
                    "error": str(exc),
                },
            )
            return {"role_assigned": False, "role_assignment_pending": True}
        return {"role_assigned": True, "role_assignment_pending": False}


class OrganizationLinkageStage:
    """Links the farmer to the submitting organization."""

    name = ORGANIZATION_LINKAGE

    def __init__(
        self,
        authority: IdentityAuthority,
        registry: FarmerRegistry,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 0.2,
    ):
        self._authority = authority
        self._registry = registry
        self._attempts = retry_attempts
        self._delay = retry_delay_seconds

    def run(self, context: ProcessingContext) -> dict[str, Any]:
        user_id = context.result(IDENTITY_USER)["aaa_user_id"]
        farmer_id = UUID(context.result(FARMER_REGISTRATION)["farmer_id"])

        link_pending = False
        try:
            call_with_retries(
                lambda: self._authority.get_organization(context.org_id),
                operation="get_organization",
                attempts=self._attempts,
                delay_seconds=self._delay,
            )
        except Exception as exc:
            if not is_transient(exc):
                raise
            link_pending = True

        link = self._registry.link_farmer_to_organization(farmer_id, user_id, context.org_id)
        if link_pending:
            self._registry.mark_link_pending(farmer_id)
            logger.warning(
                "organization_link_deferred",
                extra={"farmer_id": str(farmer_id), "org_id": context.org_id},
            )
        return {"link_id": str(link.id), "link_pending": link_pending}


class KisanSathiAssignmentStage:
    """Attaches a field agent to the farmer's organization link."""

    name = KISAN_SATHI_ASSIGNMENT

    def __init__(self, registry: FarmerRegistry):
        self._registry = registry

    def run(self, context: ProcessingContext) -> dict[str, Any]:
        kisan_sathi = context.options.kisan_sathi_user_id or _text(
            context.record, "kisan_sathi_user_id"
        )
        if not kisan_sathi:
            return {"skipped": True, "reason": "no kisan sathi user id supplied"}

        link_id = UUID(context.result(ORGANIZATION_LINKAGE)["link_id"])
        self._registry.assign_kisan_sathi(link_id, kisan_sathi)
        return {"kisan_sathi_user_id": kisan_sathi}
