from __future__ import annotations

import random
import re

import pytest

from carecall.services.anonymizer import anonymize_transcript, get_age_group

TRANSCRIPT = (
    "Hola Lupita, soy Rosa Martínez. Tengo 72 años y vivo en Calle Hidalgo 14, "
    "colonia centro. Mi hijo Carlos me llama al 5512345678 o al +525598765432."
)


def test_names_phones_ages_and_addresses_are_replaced() -> None:
    result = anonymize_transcript(TRANSCRIPT)

    assert "Rosa" not in result
    assert "Carlos" not in result
    assert "Hidalgo" not in result
    assert "72" not in result
    assert "[EDAD] años" in result
    assert "[DIRECCION]" in result
    assert result.count("[TELEFONO]") == 2


def test_no_long_digit_runs_or_capitalized_words_remain() -> None:
    result = anonymize_transcript(TRANSCRIPT)
    outside_placeholders = re.sub(r"\[[A-Z]+\]", "", result)

    assert not re.search(r"\d{10,}", result)
    assert not re.search(r"\b[A-ZÁÉÍÓÚÑ]", outside_placeholders)


def test_anonymization_is_idempotent() -> None:
    once = anonymize_transcript(TRANSCRIPT)

    assert anonymize_transcript(once) == once


@pytest.mark.parametrize(
    "text",
    [
        "12345añosAna[11año55año",
        "12345678901calle x",
        "Tengo 80añoscalle Juárez 3",
        "[EDAD]5 años]NOMBRE[calle 9",
        "calle calle Calle, 7 AÑOS+5215512345678Rosa",
    ],
)
def test_glued_tokens_are_idempotent(text: str) -> None:
    once = anonymize_transcript(text)

    assert anonymize_transcript(once) == once


def test_glued_age_is_masked() -> None:
    result = anonymize_transcript("12345añosAna")

    assert "12345" not in result
    assert result.startswith("[EDAD] años")


@pytest.mark.parametrize("seed", range(20))
def test_random_fragments_are_idempotent(seed: int) -> None:
    rng = random.Random(seed)
    fragments = ["0", "7", "12", "5512345678", " ", "años", "año", "Ana", "A", "calle ", "Calle ", "[", "]", ",", "+", "x", "N", "NOMBRE"]
    text = "".join(rng.choice(fragments) for _ in range(40))

    once = anonymize_transcript(text)

    assert anonymize_transcript(once) == once


def test_lowercase_text_is_untouched() -> None:
    text = "hoy hice sopa y estuvo rica"

    assert anonymize_transcript(text) == text


def test_empty_input() -> None:
    assert anonymize_transcript("") == ""
    assert anonymize_transcript(None) == ""


@pytest.mark.parametrize(
    ("age", "group"),
    [
        (None, "desconocido"),
        (0, "desconocido"),
        (35, "30-39"),
        (45, "40-49"),
        (59, "50-59"),
        (60, "60-69"),
        (79, "70-79"),
        (91, "80+"),
    ],
)
def test_age_groups(age, group: str) -> None:
    assert get_age_group(age) == group
