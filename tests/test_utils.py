"""
Tests for the input normalizer and small helpers.

Tests cover:
- Phone number canonicalization
- Amount parsing and minor-unit conversion
- Address checks
- HMAC signature verification
"""

import hashlib
import hmac
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from app.utils import (
    KeyedLock,
    format_minor_units,
    format_timestamp,
    is_valid_address,
    mask_address,
    normalize_phone_number,
    parse_amount,
    to_minor_units,
    verify_hmac_signature,
)


class TestNormalizePhoneNumber:
    """Test phone number canonicalization."""

    def test_eleven_digit_mobile_gets_country_code(self):
        assert normalize_phone_number("11987654321") == "+5511987654321"

    def test_ten_digit_landline_gets_country_code(self):
        assert normalize_phone_number("1133334444") == "+551133334444"

    def test_formatting_characters_are_stripped(self):
        assert normalize_phone_number("(11) 98765-4321") == "+5511987654321"

    def test_already_international_number_is_kept(self):
        assert normalize_phone_number("+5511987654321") == "+5511987654321"

    def test_other_lengths_only_get_plus_prefix(self):
        assert normalize_phone_number("987654321") == "+987654321"

    def test_custom_country_code(self):
        assert normalize_phone_number("2025550100", country_code="1") == "+12025550100"

    def test_malformed_input_never_raises(self):
        assert normalize_phone_number("abc") == "+"
        assert normalize_phone_number(None) == "+"


class TestParseAmount:
    """Test user-typed amount parsing."""

    @pytest.mark.parametrize("text,expected", [
        ("10.50", Decimal("10.50")),
        ("10,50", Decimal("10.50")),
        ("7", Decimal("7")),
        (" 0.01 ", Decimal("0.01")),
    ])
    def test_valid_amounts(self, text, expected):
        assert parse_amount(text) == expected

    @pytest.mark.parametrize("text", ["abc", "", "0", "-5", "0.00", "NaN", "Infinity", "1e3", "10.5.1"])
    def test_invalid_amounts(self, text):
        assert parse_amount(text) is None

    def test_none_is_invalid(self):
        assert parse_amount(None) is None


class TestMinorUnits:
    """Test conversion to integer cents."""

    def test_exact_amount(self):
        assert to_minor_units(Decimal("10.50")) == 1050

    def test_fractional_cents_are_floored(self):
        assert to_minor_units(Decimal("10.509")) == 1050

    def test_float_input_uses_decimal_representation(self):
        # 0.29 * 100 is 28.999... in binary floating point
        assert to_minor_units(0.29) == 29

    def test_zero(self):
        assert to_minor_units(0) == 0

    def test_format_minor_units(self):
        assert format_minor_units(1050) == "R$ 10.50"
        assert format_minor_units(0) == "R$ 0.00"


class TestAddresses:
    """Test ledger address helpers."""

    def test_valid_address(self):
        assert is_valid_address("0x5FbDB2315678afecb367f032d93F642f64180aa3")

    def test_lowercase_address_is_valid(self):
        assert is_valid_address("0x5fbdb2315678afecb367f032d93f642f64180aa3")

    @pytest.mark.parametrize("value", [None, "", "not-an-address", "0x1234", 42])
    def test_invalid_addresses(self, value):
        assert not is_valid_address(value)

    def test_mask_address(self):
        assert mask_address("0x5FbDB2315678afecb367f032d93F642f64180aa3") == "0x5FbD...0aa3"


class TestTimestamps:
    def test_second_precision(self):
        moment = datetime(2025, 1, 15, 10, 0, 0, 123456, tzinfo=timezone.utc)
        assert format_timestamp(moment) == "2025-01-15T10:00:00Z"

    def test_precise_keeps_microseconds(self):
        moment = datetime(2025, 1, 15, 10, 0, 0, 123456, tzinfo=timezone.utc)
        assert format_timestamp(moment, precise=True) == "2025-01-15T10:00:00.123456Z"


class TestHmacSignature:
    """Test webhook signature verification."""

    def test_valid_signature(self):
        body = b'{"type":"ACCOUNTS_UPDATED","itemId":"item-1"}'
        signature = hmac.new(b"secret", body, hashlib.sha256).hexdigest()
        assert verify_hmac_signature(body, signature, "secret")

    def test_wrong_secret_is_rejected(self):
        body = b'{"type":"ACCOUNTS_UPDATED","itemId":"item-1"}'
        signature = hmac.new(b"other", body, hashlib.sha256).hexdigest()
        assert not verify_hmac_signature(body, signature, "secret")


class TestKeyedLock:
    def test_locks_are_released_after_use(self):
        locks = KeyedLock()
        with locks.hold("a"):
            with locks.hold("b"):
                pass
        assert locks._locks == {}
