"""
Tests for field normalizers and the staged-row validation pass.
"""

from decimal import Decimal

import pytest

from app.domain.imports import jobs, staging
from app.domain.imports.validators import (
    SAMPLE_LIMIT,
    is_valid_email,
    normalize_choice,
    normalize_ssn,
    parse_amount,
    validate_row,
    validate_staged_rows,
    ACCOUNT_TYPES,
)

REQUIRED = ["account_number", "current_balance"]


class TestNormalizeSsn:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("212-45-6789", "212456789"),
            ("212 45 6789", "212456789"),
            ("Z12456789", "012456789"),
            (212456789, "212456789"),
        ],
    )
    def test_valid(self, raw, expected):
        assert normalize_ssn(raw) == expected

    @pytest.mark.parametrize(
        "raw",
        [None, "", "12345", "1234567890", "111111111", "123456789", "987654321", "000123456", "666123456", "912345678"],
    )
    def test_invalid(self, raw):
        assert normalize_ssn(raw) is None


class TestParseAmount:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("$1,234.56", Decimal("1234.56")),
            ("1234", Decimal("1234")),
            ("(12.00)", Decimal("-12.00")),
            (" 7.5 ", Decimal("7.5")),
        ],
    )
    def test_parses(self, raw, expected):
        assert parse_amount(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "  ", "abc", "$", "NaN", "1.2.3"])
    def test_rejects(self, raw):
        assert parse_amount(raw) is None


class TestChoicesAndEmail:
    def test_normalize_choice(self):
        assert normalize_choice("Credit Card", ACCOUNT_TYPES, "other") == "credit_card"
        assert normalize_choice("student-loan", ACCOUNT_TYPES, "other") == "student_loan"
        assert normalize_choice("timeshare", ACCOUNT_TYPES, "other") == "other"
        assert normalize_choice(None, ACCOUNT_TYPES, "other") == "other"

    def test_email(self):
        assert is_valid_email("debtor@example.com")
        assert not is_valid_email("debtor@example")
        assert not is_valid_email("not an email")
        assert not is_valid_email(None)


class TestValidateRow:
    def test_clean_row(self):
        result = validate_row(1, {"account_number": "A-1", "current_balance": "$10.00", "ssn": "212-45-6789"}, REQUIRED)
        assert result == {"errors": [], "warnings": []}

    def test_missing_required_and_bad_balance_are_errors(self):
        result = validate_row(4, {"account_number": " ", "current_balance": "ten"}, REQUIRED)
        fields = sorted(error["field"] for error in result["errors"])
        assert fields == ["account_number", "current_balance"]
        assert all(error["row_number"] == 4 for error in result["errors"])

    def test_format_problems_are_warnings(self):
        data = {
            "account_number": "A-1",
            "current_balance": "10",
            "ssn": "123",
            "dob": "not a date",
            "phone_primary": "555-1234",
            "email_primary_2": "nobody",
        }
        result = validate_row(2, data, REQUIRED)

        assert result["errors"] == []
        assert sorted(w["field"] for w in result["warnings"]) == ["dob", "email_primary_2", "phone_primary", "ssn"]


class TestValidateStagedRows:
    def test_summary_counts_and_sample_cap(self, engine):
        job = jobs.create_import_job(engine, user_id="user-1", file_name="a.csv")
        rows = [{"Acct": f"A-{i}", "Bal": "oops" if i % 2 else "10"} for i in range(1, 2 * SAMPLE_LIMIT + 21)]
        staging.write_staged_rows(engine, job["id"], {"account_number": "Acct", "current_balance": "Bal"}, rows)

        summary = validate_staged_rows(engine, job["id"], REQUIRED, page_size=50)

        assert summary["total_rows"] == len(rows)
        assert summary["invalid_rows"] == SAMPLE_LIMIT + 10
        assert summary["valid_rows"] == SAMPLE_LIMIT + 10
        assert len(summary["errors"]) == SAMPLE_LIMIT
        assert summary["errors"][0]["row_number"] == 1
