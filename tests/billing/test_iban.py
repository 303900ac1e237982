"""Tests for IBAN normalization, validation and masking."""

import pytest

from agents.billing import iban as iban_utils


class TestValidate:
    def test_valid_german_iban(self):
        result = iban_utils.validate("DE89370400440532013000")

        assert result.valid is True
        assert result.country_code == "DE"
        assert result.is_sepa is True
        assert result.checksum == "89"
        assert result.bank_id == "37040044"
        assert result.formatted == "DE89 3704 0044 0532 0130 00"
        assert result.errors == ()

    @pytest.mark.parametrize(
        "value,country,bank_id",
        [
            ("GB82WEST12345698765432", "GB", "WEST"),
            ("NL91ABNA0417164300", "NL", "ABNA"),
            ("IT60X0542811101000000123456", "IT", "05428"),
            ("FR1420041010050500013M02606", "FR", "20041"),
        ],
    )
    def test_valid_sepa_ibans(self, value, country, bank_id):
        result = iban_utils.validate(value)
        assert result.valid is True
        assert result.country_code == country
        assert result.bank_id == bank_id

    def test_checksum_failure(self):
        result = iban_utils.validate("DE89370400440532013001")

        assert result.valid is False
        assert result.errors == ("IBAN checksum is invalid",)
        assert result.bank_id is None

    def test_wrong_length(self):
        result = iban_utils.validate("DE8937040044053201300")
        assert result.valid is False
        assert "length" in result.errors[0]

    def test_non_sepa_iban_is_valid_but_flagged(self):
        result = iban_utils.validate("AE070331234567890123456")

        assert result.valid is True
        assert result.is_sepa is False

    def test_unknown_country(self):
        result = iban_utils.validate("XX89370400440532013000")
        assert result.valid is False
        assert result.country_code == "XX"

    @pytest.mark.parametrize("value", [None, "", "   ", "not an iban", "1234"])
    def test_garbage_input(self, value):
        assert iban_utils.is_valid(value) is False


def test_normalize_strips_spaces_and_prefix():
    """Test normalization of printed and lowercase forms."""
    assert iban_utils.normalize("iban de89 3704 0044 0532 0130 00") == "DE89370400440532013000"
    assert iban_utils.normalize("DE89-3704-0044-0532-0130-00") == "DE89370400440532013000"


def test_mask_keeps_first_and_last_four():
    """Test masked display form."""
    assert iban_utils.mask("DE89370400440532013000") == "DE89" + "*" * 14 + "3000"
    assert iban_utils.mask("DE12") == "****"


def test_hash_is_stable_across_formatting():
    """Test the dedup key ignores spacing and case."""
    assert iban_utils.iban_hash("de89 3704 0044 0532 0130 00") == iban_utils.iban_hash("DE89370400440532013000")
    assert len(iban_utils.iban_hash("DE89370400440532013000")) == 64


def test_country_helpers():
    """Test country extraction and SEPA membership."""
    assert iban_utils.country_code("de89370400440532013000") == "DE"
    assert iban_utils.country_code("12") is None
    assert iban_utils.is_sepa_country("at") is True
    assert iban_utils.is_sepa_country("AE") is False
    assert iban_utils.is_sepa_country(None) is False
