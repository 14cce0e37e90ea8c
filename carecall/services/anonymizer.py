"""
Transcript anonymization for cross-user analysis.

Replaces street addresses, ages, phone numbers and capitalized words
(treated as proper nouns) with fixed placeholder tokens. Running the
function on its own output changes nothing.
"""

from __future__ import annotations

import re

NAME_TOKEN = "[NOMBRE]"
PHONE_TOKEN = "[TELEFONO]"
AGE_TOKEN = "[EDAD]"
ADDRESS_TOKEN = "[DIRECCION]"

_PLACEHOLDER_WORDS = frozenset({"NOMBRE", "TELEFONO", "EDAD", "DIRECCION"})

_ADDRESS = re.compile(r"(?<![^\W\d_])calle\s+[^,]+", re.IGNORECASE)
_AGE = re.compile(r"\d+\s*(?:años|año)", re.IGNORECASE)
_PHONE = re.compile(r"\+?\d{10,}")
_WORD = re.compile(r"[^\W\d_]+")


def _is_placeholder(text: str, match: re.Match[str]) -> bool:
    start, end = match.span()
    return (
        match.group() in _PLACEHOLDER_WORDS
        and start > 0
        and text[start - 1] == "["
        and end < len(text)
        and text[end] == "]"
    )


def _replace_names(text: str) -> str:
    def _sub(match: re.Match[str]) -> str:
        word = match.group()
        if not word[0].isupper() or _is_placeholder(text, match):
            return word
        return NAME_TOKEN

    return _WORD.sub(_sub, text)


def _anonymize_once(text: str) -> str:
    # Addresses first so "Calle Hidalgo 12" is caught before names are
    # rewritten; ages before phones so "10 años" never loses its digits.
    result = _ADDRESS.sub(ADDRESS_TOKEN, text)
    result = _AGE.sub(f"{AGE_TOKEN} años", result)
    result = _PHONE.sub(PHONE_TOKEN, result)
    return _replace_names(result)


def anonymize_transcript(text: str | None) -> str:
    # A pass can expose a new match next to a placeholder. Every pass that
    # changes anything removes digits, "calle" or unmasked names, so this ends.
    result = text or ""
    while True:
        updated = _anonymize_once(result)
        if updated == result:
            return result
        result = updated


def get_age_group(age: int | None) -> str:
    """Bucket an age into a decade label; unknown ages map to ``desconocido``."""
    if not age:
        return "desconocido"
    if age < 40:
        return "30-39"
    if age < 50:
        return "40-49"
    if age < 60:
        return "50-59"
    if age < 70:
        return "60-69"
    if age < 80:
        return "70-79"
    return "80+"
