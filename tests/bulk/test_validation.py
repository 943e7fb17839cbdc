"""Tests for farmers_bulk.domain.validation -- pure record validation."""

import pytest

from farmers_kernel.exceptions import RecordValidationError

from farmers_bulk.domain.validation import (
    CODE_DUPLICATE,
    CODE_INVALID_FORMAT,
    CODE_REQUIRED,
    check_record,
    normalize_phone,
    validate_batch,
    validate_record,
)

VALID = {"first_name": "Asha", "last_name": "Devi", "phone_number": "9876543210"}


class TestNormalizePhone:

    @pytest.mark.parametrize("raw,expected", [
        ("98765 43210", "9876543210"),
        ("+91-98765-43210", "919876543210"),
        (9876543210, "9876543210"),
        (None, ""),
    ])
    def test_strips_non_digits(self, raw, expected):
        assert normalize_phone(raw) == expected


class TestValidateRecord:

    def test_valid_record(self):
        assert validate_record(VALID, 1) == []

    def test_missing_required_fields(self):
        errors = validate_record({"phone_number": "9876543210"}, 4)
        assert {(e.field, e.code) for e in errors} == {
            ("first_name", CODE_REQUIRED),
            ("last_name", CODE_REQUIRED),
        }
        assert all(e.record_number == 4 for e in errors)

    def test_blank_is_missing(self):
        errors = validate_record({**VALID, "first_name": "   "}, 1)
        assert [e.field for e in errors] == ["first_name"]

    @pytest.mark.parametrize("phone", ["12345", "5876543210", "98765432101", "abcdefghij"])
    def test_invalid_phone(self, phone):
        errors = validate_record({**VALID, "phone_number": phone}, 1)
        assert [(e.field, e.code) for e in errors] == [("phone_number", CODE_INVALID_FORMAT)]
        assert errors[0].value == phone

    def test_formatted_phone_accepted(self):
        assert validate_record({**VALID, "phone_number": "98765-43210"}, 1) == []

    def test_invalid_email_and_gender(self):
        errors = validate_record({**VALID, "email": "nope", "gender": "x"}, 1)
        assert {e.field for e in errors} == {"email", "gender"}

    def test_gender_case_insensitive(self):
        assert validate_record({**VALID, "gender": "Female"}, 1) == []


class TestCheckRecord:

    def test_raises_first_problem(self):
        with pytest.raises(RecordValidationError) as exc_info:
            check_record({"last_name": "Devi", "phone_number": "1"})
        assert exc_info.value.field == "first_name"
        assert exc_info.value.code == "VALIDATION_ERROR"

    def test_valid_passes(self):
        check_record(VALID)


class TestValidateBatch:

    def test_summary_counts(self):
        summary = validate_batch([VALID, {**VALID, "phone_number": "1"}, {}])
        assert summary.total_records == 3
        assert summary.valid_records == 1
        assert summary.invalid_records == 2
        assert not summary.is_valid

    def test_duplicate_phone_flagged_on_later_record(self):
        summary = validate_batch([VALID, {**VALID, "phone_number": "98765 43210"}])
        assert summary.invalid_records == 1
        (error,) = summary.errors
        assert error.code == CODE_DUPLICATE
        assert error.record_number == 2
        assert "record 1" in error.message

    def test_all_valid(self):
        records = [{**VALID, "phone_number": f"98765432{i:02d}"} for i in range(5)]
        summary = validate_batch(records)
        assert summary.is_valid
        assert summary.errors == ()
