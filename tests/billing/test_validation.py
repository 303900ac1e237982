"""Tests for record-level debtor validation."""

from decimal import Decimal

import pytest
from sqlalchemy import select

from agents.billing import iban as iban_utils
from agents.billing.blacklist import Blacklist
from agents.billing.validation import DebtorValidator
from backend.apps.billing.tables import TABLES
from tests.billing.fakes import NOW, VALID_IBAN


@pytest.fixture
def validator(engine, repo):
    return DebtorValidator(repo, Blacklist(engine))


@pytest.fixture
def debtor(repo, make_debtor):
    def _make(**values):
        values.setdefault("iban", VALID_IBAN)
        return repo.get_debtor(make_debtor(**values))

    return _make


def test_clean_debtor_has_no_errors(validator, debtor):
    """Test a complete German debtor passes."""
    assert validator.validate(debtor()) == []


@pytest.mark.parametrize(
    "values,expected",
    [
        ({"iban": None}, "IBAN is required"),
        ({"iban": "DE89370400440532013001"}, "IBAN checksum is invalid"),
        ({"iban": "AE070331234567890123456"}, "IBAN country AE is not in the SEPA zone"),
        ({"first_name": ""}, "First name is required"),
        ({"last_name": "X" * 36}, "Last name exceeds 35 characters"),
        ({"first_name": "M4x"}, "First name contains invalid characters"),
        ({"amount": Decimal("0.50")}, "Amount must be between 1 and 50000"),
        ({"amount": Decimal("50000.01")}, "Amount must be between 1 and 50000"),
        ({"email": "not-an-email"}, "Email address is malformed"),
        ({"country": "US"}, "Country US is not in the SEPA zone"),
    ],
)
def test_single_field_errors(validator, debtor, values, expected):
    """Test each attribute check reports its own message."""
    if values.get("iban", VALID_IBAN) is None:
        values["iban_hash"] = "no-iban"
    assert expected in validator.validate(debtor(**values))


@pytest.mark.parametrize("name", ["Jean-Luc", "O'Brien", "Müller", "Anna Maria", "St. John"])
def test_accepts_real_world_names(validator, debtor, name):
    """Test hyphens, apostrophes, umlauts and spaces are accepted."""
    assert validator.validate(debtor(first_name=name)) == []


class TestBlacklist:
    def test_iban(self, engine, validator, debtor):
        Blacklist(engine).add(iban="de89 3704 0044 0532 0130 00")
        assert "IBAN is blacklisted" in validator.validate(debtor())

    def test_email_is_case_insensitive(self, engine, validator, debtor):
        Blacklist(engine).add(email="Fraud@Example.com")
        assert "Email is blacklisted" in validator.validate(debtor(email="fraud@example.com"))

    def test_name(self, engine, validator, debtor):
        Blacklist(engine).add(first_name="max", last_name="MUSTERMANN")
        assert "Name is blacklisted" in validator.validate(debtor())

    def test_entry_needs_an_identifier(self, engine):
        with pytest.raises(ValueError):
            Blacklist(engine).add(reason="nothing to match")


class TestValidateAndUpdate:
    def test_valid_debtor_is_normalized(self, repo, validator, debtor):
        record = debtor(iban="de89 3704 0044 0532 0130 00", iban_hash="raw")

        assert validator.validate_and_update(record, now=NOW) is True

        stored = repo.get_debtor(record.id)
        assert stored.validation_status == "valid"
        assert stored.iban == VALID_IBAN
        assert stored.iban_hash == iban_utils.iban_hash(VALID_IBAN)

    def test_invalid_debtor_keeps_errors(self, engine, repo, validator, debtor):
        record = debtor(iban="DE89370400440532013001", first_name="")

        assert validator.validate_and_update(record, now=NOW) is False

        stored = repo.get_debtor(record.id)
        assert stored.validation_status == "invalid"

        d = TABLES.debtors
        with engine.begin() as conn:
            row = conn.execute(select(d.c.validation_errors, d.c.iban_valid).where(d.c.id == record.id)).one()
        assert row.validation_errors == ["IBAN checksum is invalid", "First name is required"]
        assert row.iban_valid is False
