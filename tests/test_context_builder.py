from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from carecall.services.context_builder import (
    analyze_call_history,
    build_call_context,
    build_full_context,
    calculate_age,
    calculate_emotional_trend,
    days_since,
    generate_briefing,
    generate_conversation_starters,
    get_similar_patterns,
)
from tests.fakes.fake_clients import FakeSimilarityIndex

NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)
USER = {"id": "42", "name": "Rosa", "last_name": "Martínez", "birth_date": "1956-05-10", "migrant_name": "Carlos"}


def test_calculate_age_handles_birthday_not_yet_reached() -> None:
    assert calculate_age("1956-05-10", today=date(2026, 5, 9)) == 69
    assert calculate_age("1956-05-10", today=date(2026, 5, 10)) == 70
    assert calculate_age("not a date") is None
    assert calculate_age(None) is None


def test_call_context_for_first_call() -> None:
    context = build_call_context(USER, [], today=date(2026, 3, 2))

    assert context["previous_calls"] == 0
    assert context["last_topics"] == "primera llamada"
    assert context["relationship"] == "familiar"


@pytest.mark.parametrize(
    ("emotions", "trend"),
    [
        ([], "unknown"),
        (["negativo"], "negativo"),
        (["muy_positivo", "positivo", "muy_positivo"], "mejorando"),
        (["positivo", "neutral"], "estable_positivo"),
        (["neutral", "negativo", "neutral", "positivo"], "estable"),
        (["negativo", "negativo", "neutral"], "estable_negativo"),
        (["muy_negativo", "muy_negativo", "negativo"], "necesita_atencion"),
    ],
)
def test_emotional_trend(emotions, trend: str) -> None:
    assert calculate_emotional_trend(emotions) == trend


def test_recent_calls_weigh_double() -> None:
    # Three recent bad calls outweigh three older good ones
    emotions = ["negativo"] * 3 + ["positivo"] * 3

    assert calculate_emotional_trend(emotions) == "estable"


def test_history_analysis_ignores_completed_follow_ups() -> None:
    history = [
        {"id": "c2", "topics_discussed": ["comida"], "follow_up_needed": True, "follow_up_completed": True},
        {"id": "c1", "topics_discussed": ["comida", "salud"], "follow_up_needed": True, "created_at": "2026-02-01"},
    ]

    analysis = analyze_call_history(history)

    assert analysis.dominant_topics == ["comida", "salud"]
    assert [p["call_id"] for p in analysis.pending_follow_ups] == ["c1"]
    assert analysis.topics_to_revisit == ["comida"]
    assert analysis.topics_to_avoid == []


def test_topics_to_avoid_are_capped_at_three() -> None:
    history = [
        {"topics_discussed": ["salud", "soledad"], "sentiment": "muy_negativo"},
        {"topics_discussed": ["dinero", "salud", "vecinos"], "sentiment": "negativo"},
    ]

    assert analyze_call_history(history).topics_to_avoid == ["salud", "soledad", "dinero"]


def test_conversation_starters() -> None:
    first = generate_conversation_starters(USER, analyze_call_history([]))
    assert first[0].startswith("¡Hola Rosa! Soy Lupita. Carlos")

    later = generate_conversation_starters(USER, analyze_call_history([{"topics_discussed": ["comida"]}]))
    assert later == [
        "¡Hola Rosa! ¿Qué cocinó de rico estos días? Me quedé pensando en esa receta que me platicó."
    ]

    fallback = generate_conversation_starters(USER, analyze_call_history([{"topics_discussed": ["clima"]}]))
    assert fallback == ["¡Hola Rosa! ¿Cómo ha estado? Ya la extrañaba."]


def test_days_since_accepts_trailing_z() -> None:
    assert days_since("2026-02-27T15:00:00Z", now=NOW) == 3
    assert days_since(None, now=NOW) is None
    assert days_since("yesterday", now=NOW) is None


def test_full_context_and_briefing() -> None:
    history = [{"topics_discussed": ["familia"], "sentiment": "positivo", "created_at": "2026-02-28T15:00:00+00:00"}]

    context = build_full_context(USER, history, now=NOW)

    assert context["user_full_name"] == "Rosa Martínez"
    assert context["user_age"] == 69
    assert context["is_first_call"] is False
    assert context["days_since_last_call"] == 2
    assert context["emotional_trend"] == "positivo"
    assert context["context_built_at"] == NOW.isoformat()

    briefing = generate_briefing(context)
    assert "Usuario: Rosa Martínez, 69 años" in briefing
    assert "Última llamada: hace 2 días" in briefing
    assert "Temas para retomar: familia" in briefing
    assert "Temas sensibles" not in briefing
    assert briefing.endswith("¡Hola Rosa! ¿Cómo está la familia? ¿Ya vio a sus nietos?")


@pytest.mark.asyncio
async def test_similar_patterns_are_empty_when_index_fails() -> None:
    assert await get_similar_patterns(FakeSimilarityIndex(fail=True), ["familia"]) == []
    assert await get_similar_patterns(FakeSimilarityIndex(), []) == []
