"""
Input Validation Utilities

- Phone numbers (international, with or without +)
- Delivery addresses (Arabic and Latin script)
- Free text sanitization
- Money amounts (Decimal, two places)
"""
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

MONEY_QUANT = Decimal("0.01")


class ValidationPatterns:
    """Regex patterns for validation"""

    # Digits only after cleaning; optional leading +
    PHONE = re.compile(r"^\+?\d{7,15}$")

    # Letters of any script, digits, common address punctuation
    ADDRESS = re.compile(r"^[\w\s\,\.\-\/\'\"#()]+$", re.UNICODE)

    XSS_PATTERNS = [
        re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL),
        re.compile(r"javascript:", re.IGNORECASE),
        # Event handlers must start at word boundary (onclick=, onload=)
        re.compile(r"\bon\w+=", re.IGNORECASE),
        re.compile(r"<iframe", re.IGNORECASE),
        re.compile(r"<object", re.IGNORECASE),
        re.compile(r"<embed", re.IGNORECASE),
    ]


class PhoneNumberValidator:
    """Phone number validation and normalization"""

    @staticmethod
    def validate(phone: str) -> bool:
        if not phone:
            return False
        cleaned = re.sub(r"[\s\-\(\)]", "", phone)
        return bool(ValidationPatterns.PHONE.match(cleaned))

    @staticmethod
    def normalize(phone: str) -> str:
        """Keep digits and a leading +"""
        cleaned = re.sub(r"[^\d+]", "", phone)
        if cleaned.startswith("00"):
            cleaned = "+" + cleaned[2:]
        return cleaned

    @staticmethod
    def mask(phone: str) -> str:
        """Mask for logs"""
        if len(phone) < 4:
            return "****"
        return phone[:-4] + "****"


class TextSanitizer:
    """Text sanitization for storage"""

    @staticmethod
    def sanitize(text: str, max_length: int = 1000) -> str:
        """Trim, cap length, drop null bytes and control characters.

        Does not HTML-escape; that happens at display time.
        """
        if not text:
            return ""
        sanitized = text.strip()[:max_length]
        sanitized = sanitized.replace("\x00", "")
        sanitized = "".join(
            char for char in sanitized
            if char >= " " or char in "\n\r\t"
        )
        return re.sub(r" +", " ", sanitized)

    @staticmethod
    def check_for_injection(text: str) -> tuple[bool, str | None]:
        """Returns (is_safe, detected_pattern)"""
        if not text:
            return True, None
        for pattern in ValidationPatterns.XSS_PATTERNS:
            if pattern.search(text):
                return False, "script pattern detected"
        return True, None


class AddressValidator:
    """Delivery address validation"""

    MIN_LENGTH = 5
    MAX_LENGTH = 300

    @staticmethod
    def validate(address: str) -> tuple[bool, str | None]:
        """Returns (is_valid, error_message)"""
        if not address or not address.strip():
            return False, "Address is required"

        address = address.strip()

        if len(address) < AddressValidator.MIN_LENGTH:
            return False, f"Address too short (minimum {AddressValidator.MIN_LENGTH} characters)"

        if len(address) > AddressValidator.MAX_LENGTH:
            return False, f"Address too long (maximum {AddressValidator.MAX_LENGTH} characters)"

        if not ValidationPatterns.ADDRESS.match(address):
            return False, "Address contains invalid characters"

        is_safe, pattern = TextSanitizer.check_for_injection(address)
        if not is_safe:
            return False, f"Invalid address: {pattern}"

        return True, None

    @staticmethod
    def normalize(address: str) -> str:
        return re.sub(r"\s+", " ", address.strip())


def to_money(value: Any) -> Decimal:
    """Coerce to a two-place Decimal, rounding half up.

    Floats go through str() so 0.1 stays 0.10 instead of its binary expansion.
    """
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


class AmountValidator:
    """Monetary amount validation"""

    @staticmethod
    def validate(
        amount: Any,
        min_value: Decimal = Decimal("0"),
        max_value: Decimal = Decimal("1000000"),
        allow_zero: bool = True,
    ) -> tuple[bool, str | None]:
        """Returns (is_valid, error_message)"""
        try:
            value = Decimal(str(amount)) if isinstance(amount, float) else Decimal(amount)
        except (InvalidOperation, TypeError, ValueError):
            return False, "Amount is not a number"

        if not value.is_finite():
            return False, "Amount is not a number"

        if value < min_value:
            return False, f"Amount must be at least {min_value}"

        if value > max_value:
            return False, f"Amount cannot exceed {max_value}"

        if not allow_zero and value == 0:
            return False, "Amount cannot be zero"

        if value != value.quantize(MONEY_QUANT):
            return False, "Amount cannot have more than 2 decimal places"

        return True, None
