"""
Input validation and money helpers
"""
import pytest
from decimal import Decimal

from marketplace.core.validation import (
    AddressValidator,
    AmountValidator,
    PhoneNumberValidator,
    TextSanitizer,
    to_money,
)


@pytest.mark.unit
class TestPhoneNumberValidator:

    @pytest.mark.parametrize("phone", ["+962791234567", "0791234567", "00962791234567", "079-123 4567"])
    def test_valid_numbers(self, phone):
        assert PhoneNumberValidator.validate(phone) is True

    @pytest.mark.parametrize("phone", ["", "12345", "phone", "+96279123456789012"])
    def test_invalid_numbers(self, phone):
        assert PhoneNumberValidator.validate(phone) is False

    def test_normalize_converts_double_zero_prefix(self):
        assert PhoneNumberValidator.normalize("00962 79 123 4567") == "+962791234567"

    def test_mask_hides_last_digits(self):
        assert PhoneNumberValidator.mask("+962791234567") == "+96279123****"


@pytest.mark.unit
class TestAddressValidator:

    def test_accepts_arabic_address(self):
        assert AddressValidator.validate("شارع الرينبو 12 عمان") == (True, None)

    def test_accepts_latin_address(self):
        assert AddressValidator.validate("12 Rainbow Street, Amman") == (True, None)

    def test_rejects_short_address(self):
        is_valid, error = AddressValidator.validate("abc")
        assert is_valid is False
        assert "too short" in error

    def test_rejects_script(self):
        is_valid, _ = AddressValidator.validate("<script>alert(1)</script> street")
        assert is_valid is False

    def test_normalize_collapses_whitespace(self):
        assert AddressValidator.normalize("  12   Rainbow \t Street ") == "12 Rainbow Street"


@pytest.mark.unit
class TestTextSanitizer:

    def test_strips_control_characters(self):
        assert TextSanitizer.sanitize("hello\x00\x07 world") == "hello world"

    def test_caps_length(self):
        assert len(TextSanitizer.sanitize("a" * 50, max_length=10)) == 10

    def test_detects_event_handler(self):
        is_safe, pattern = TextSanitizer.check_for_injection('<img onerror=alert(1)>')
        assert is_safe is False
        assert pattern is not None

    def test_plain_text_is_safe(self):
        assert TextSanitizer.check_for_injection("Leave at the door") == (True, None)


@pytest.mark.unit
class TestMoney:

    def test_rounds_half_up(self):
        assert to_money("1.005") == Decimal("1.01")
        assert to_money("1.004") == Decimal("1.00")

    def test_float_goes_through_str(self):
        assert to_money(0.1) == Decimal("0.10")

    @pytest.mark.parametrize("value", ["abc", None, "NaN", "Infinity"])
    def test_rejects_non_numbers(self, value):
        with pytest.raises(ValueError):
            to_money(value)

    def test_amount_validator_limits(self):
        assert AmountValidator.validate("10.00") == (True, None)
        assert AmountValidator.validate("-1")[0] is False
        assert AmountValidator.validate("0", allow_zero=False)[0] is False
        assert AmountValidator.validate("1.234")[0] is False
        assert AmountValidator.validate("2000000")[0] is False
