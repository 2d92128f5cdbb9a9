"""
Phone-number validation, normalisation (E.164), and formatting utilities.
Numbers without a country code are parsed in the configured default region
(US unless overridden). Uses the `phonenumbers` library.
"""

from __future__ import annotations

import phonenumbers
from phonenumbers import PhoneNumberFormat, NumberParseException

_DEFAULT_REGION = "US"


def normalise_phone(raw: str, region: str = _DEFAULT_REGION) -> tuple[str, bool]:
    """
    Normalise a typed phone number to E.164.

    Numbers without a leading ``+`` are read as national numbers of
    ``region``. Returns ``(e164, True)`` on success and ``(raw, False)`` when
    the input cannot be parsed or is not a valid number.
    """
    cleaned = raw.strip()
    if not cleaned:
        return (raw, False)

    # Digits-only input longer than a national number already carries a
    # country code (e.g. "12025550101").
    if cleaned.isdigit() and len(cleaned) > 10 and not cleaned.startswith("0"):
        cleaned = "+" + cleaned

    try:
        parsed = phonenumbers.parse(cleaned, region)
    except NumberParseException:
        return (raw, False)

    if not (phonenumbers.is_possible_number(parsed) and phonenumbers.is_valid_number(parsed)):
        return (raw, False)
    return (phonenumbers.format_number(parsed, PhoneNumberFormat.E164), True)


def format_for_display(e164: str, region: str = _DEFAULT_REGION) -> str:
    """National format for numbers in ``region``, international otherwise."""
    try:
        parsed = phonenumbers.parse(e164, region)
    except NumberParseException:
        return e164
    if phonenumbers.region_code_for_number(parsed) == region:
        return phonenumbers.format_number(parsed, PhoneNumberFormat.NATIONAL)
    return phonenumbers.format_number(parsed, PhoneNumberFormat.INTERNATIONAL)
