"""
Input Validation Utilities

Provides validation and masking for message recipients:
- Phone number validation (SMS / WhatsApp)
- Email address validation
- PII masking for logs
"""
import re


class ValidationPatterns:
    """Regex patterns for validation"""

    # Characters kept when cleaning a phone-like recipient
    PHONE_STRIP = re.compile(r"[^0-9+]")

    # Pragmatic address check: local@domain.tld, no spaces, one @
    EMAIL = re.compile(
        r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+"
        r"@[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
        r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)+$"
    )

    WHATSAPP_PREFIX = "whatsapp:"


class PhoneNumberValidator:
    """Phone number validation for sms and whatsapp recipients"""

    MIN_LENGTH = 8
    MAX_LENGTH = 20

    @staticmethod
    def clean(phone: str) -> str:
        """Strip quotes, the whatsapp: prefix and everything except digits and +"""
        phone = _strip_surrounding_quotes(phone.strip())
        if phone.startswith(ValidationPatterns.WHATSAPP_PREFIX):
            phone = phone[len(ValidationPatterns.WHATSAPP_PREFIX):]
        return ValidationPatterns.PHONE_STRIP.sub("", phone)

    @classmethod
    def validate(cls, phone: str) -> bool:
        """
        Validate a recipient for the sms / whatsapp channels.

        Args:
            phone: Raw recipient as supplied by the caller

        Returns:
            True when the cleaned value has 8-20 characters of digits and +
        """
        if not phone:
            return False
        cleaned = cls.clean(phone)
        return cls.MIN_LENGTH <= len(cleaned) <= cls.MAX_LENGTH


class EmailValidator:
    """Email address validation"""

    MAX_LENGTH = 254

    @staticmethod
    def validate(email: str) -> bool:
        if not email or len(email) > EmailValidator.MAX_LENGTH:
            return False
        return bool(ValidationPatterns.EMAIL.match(email.strip()))


def _strip_surrounding_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def mask_phone(phone: str) -> str:
    """Keep the first two and last two characters, e.g. +1*********06"""
    cleaned = ValidationPatterns.PHONE_STRIP.sub("", phone or "")
    if len(cleaned) <= 4:
        return "*" * len(cleaned)
    return cleaned[:2] + "*" * (len(cleaned) - 4) + cleaned[-2:]


def mask_email(email: str) -> str:
    """Keep the first and last character of the local part"""
    if not email or "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    if len(local) <= 2:
        return "*" * len(local) + "@" + domain
    return local[0] + "*" * (len(local) - 2) + local[-1] + "@" + domain


def mask_api_key(key: str) -> str:
    """Keep four characters on each side"""
    if len(key) <= 8:
        return "*" * len(key)
    return key[:4] + "*" * (len(key) - 8) + key[-4:]


def mask_recipient(channel: str, to: str) -> str:
    """Mask a recipient according to its channel"""
    if channel == "email":
        return mask_email(to)
    return mask_phone(to)
