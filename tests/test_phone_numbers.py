from __future__ import annotations

import pytest

from carecall.logging_config import mask_phone
from carecall.services.phone_numbers import format_mexican_number, is_valid_mexican_number


@pytest.mark.parametrize(
    ("raw", "formatted"),
    [
        ("5512345678", "+525512345678"),
        ("55 1234 5678", "+525512345678"),
        ("(55) 1234-5678", "+525512345678"),
        ("+52 55 1234 5678", "+525512345678"),
        ("525512345678", "+525512345678"),
        ("1 5512345678", "+525512345678"),
    ],
)
def test_format_mexican_number(raw: str, formatted: str) -> None:
    assert format_mexican_number(raw) == formatted
    assert is_valid_mexican_number(raw) is True


@pytest.mark.parametrize("raw", ["", None, "12345", "551234567", "+52 55 1234 56789", "abc"])
def test_invalid_numbers(raw) -> None:
    assert is_valid_mexican_number(raw) is False


def test_phone_numbers_are_masked_in_logs() -> None:
    assert mask_phone("+525512345678") == "********5678"
    assert mask_phone("1234") == "1234"
    assert mask_phone(None) is None
