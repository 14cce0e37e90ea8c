"""
Phone number normalization for the target country (Mexico).

Every number is normalized to ``+52`` followed by ten national digits
before it is validated, stored, or dialed.
"""

from __future__ import annotations

import re

COUNTRY_CODE = "52"
_NON_DIGITS = re.compile(r"\D")
_VALID_FORMAT = re.compile(r"^\+52\d{10}$")


def format_mexican_number(phone: str) -> str:
    """
    Normalize a free-form phone string to ``+52XXXXXXXXXX``.

    Non-digits are stripped. A leading ``52`` is kept as the country code;
    a leading ``1`` (North American prefix) is dropped before ``52`` is
    prepended.
    """
    cleaned = _NON_DIGITS.sub("", phone or "")

    if cleaned.startswith(COUNTRY_CODE):
        return f"+{cleaned}"

    if cleaned.startswith("1"):
        cleaned = cleaned[1:]

    return f"+{COUNTRY_CODE}{cleaned}"


def is_valid_mexican_number(phone: str | None) -> bool:
    """True iff the normalized number is ``+52`` plus exactly 10 digits."""
    if not phone:
        return False
    return bool(_VALID_FORMAT.match(format_mexican_number(phone)))
