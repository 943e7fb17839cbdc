"""
Pure validation of farmer input records.

Used twice: by the validation pipeline stage (one record, raise on the
first problem) and by validate-only submissions (whole batch, collect
every problem, including duplicate phones within the batch).

Architecture: farmers_bulk/domain.  ZERO I/O.
"""

from __future__ import annotations

import re
from typing import Any, Mapping, Sequence

from farmers_kernel.exceptions import RecordValidationError

from farmers_bulk.domain.types import RecordFieldError, ValidationSummary

REQUIRED_FIELDS: tuple[str, ...] = ("first_name", "last_name", "phone_number")
VALID_GENDERS: frozenset[str] = frozenset({"male", "female", "other", "m", "f"})

CODE_REQUIRED = "REQUIRED"
CODE_INVALID_FORMAT = "INVALID_FORMAT"
CODE_DUPLICATE = "DUPLICATE"

_NON_DIGITS = re.compile(r"\D")
_INDIAN_MOBILE = re.compile(r"^[6-9]\d{9}$")


def normalize_phone(value: Any) -> str:
    """Strip everything except digits."""
    return _NON_DIGITS.sub("", str(value or ""))


def _text(record: Mapping[str, Any], key: str) -> str:
    value = record.get(key)
    return str(value).strip() if value is not None else ""


def validate_record(
    record: Mapping[str, Any],
    record_number: int,
) -> list[RecordFieldError]:
    """Return every field problem in ``record`` (empty list when valid)."""
    errors: list[RecordFieldError] = []

    for key in REQUIRED_FIELDS:
        if not _text(record, key):
            errors.append(
                RecordFieldError(
                    record_number=record_number,
                    field=key,
                    code=CODE_REQUIRED,
                    message=f"{key} is required",
                )
            )

    phone = _text(record, "phone_number")
    if phone and not _INDIAN_MOBILE.match(normalize_phone(phone)):
        errors.append(
            RecordFieldError(
                record_number=record_number,
                field="phone_number",
                code=CODE_INVALID_FORMAT,
                message="phone_number must be a 10 digit mobile number starting with 6-9",
                value=phone,
            )
        )

    email = _text(record, "email")
    if email and ("@" not in email or "." not in email):
        errors.append(
            RecordFieldError(
                record_number=record_number,
                field="email",
                code=CODE_INVALID_FORMAT,
                message="email is not a valid address",
                value=email,
            )
        )

    gender = _text(record, "gender")
    if gender and gender.lower() not in VALID_GENDERS:
        errors.append(
            RecordFieldError(
                record_number=record_number,
                field="gender",
                code=CODE_INVALID_FORMAT,
                message="gender must be one of male, female, other",
                value=gender,
            )
        )

    return errors


def check_record(record: Mapping[str, Any]) -> None:
    """Raise RecordValidationError for the first problem in ``record``."""
    errors = validate_record(record, record_number=1)
    if errors:
        first = errors[0]
        raise RecordValidationError(first.field, first.message, first.value)


def validate_batch(records: Sequence[Mapping[str, Any]]) -> ValidationSummary:
    """Validate a whole submission without side effects.

    Record numbers in the returned errors are 1-based.  A phone number
    seen earlier in the batch marks the later record as DUPLICATE.
    """
    errors: list[RecordFieldError] = []
    invalid = 0
    seen_phones: dict[str, int] = {}

    for i, record in enumerate(records):
        record_number = i + 1
        record_errors = validate_record(record, record_number)

        phone = normalize_phone(record.get("phone_number"))
        if phone:
            if phone in seen_phones:
                record_errors.append(
                    RecordFieldError(
                        record_number=record_number,
                        field="phone_number",
                        code=CODE_DUPLICATE,
                        message=f"duplicate phone number, first seen in record {seen_phones[phone]}",
                        value=phone,
                    )
                )
            else:
                seen_phones[phone] = record_number

        if record_errors:
            invalid += 1
            errors.extend(record_errors)

    return ValidationSummary(
        total_records=len(records),
        valid_records=len(records) - invalid,
        invalid_records=invalid,
        errors=tuple(errors),
    )
