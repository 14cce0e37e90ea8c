from __future__ import annotations

import pytest

from carecall.schemas.insight import BehavioralCode, EmotionalState
from carecall.services.transcript_analyzer import (
    analyze_transcript,
    detect_behavioral_codes,
    detect_crisis,
    detect_emergency_keywords,
    detect_emotional_state,
    determine_follow_up,
    extract_family_mentions,
    extract_health_mentions,
    extract_topics,
    generate_action_items,
    identify_needs,
)

LONELY_COOK = "Ayer hice tamales, me siento sola sin mi familia"


def test_lonely_cook_transcript() -> None:
    codes = detect_behavioral_codes(LONELY_COOK)

    assert {BehavioralCode.COM, BehavioralCode.SOL, BehavioralCode.FAM} <= set(codes)
    assert detect_emotional_state(LONELY_COOK) == EmotionalState.NEUTRAL
    assert determine_follow_up(codes, EmotionalState.NEUTRAL) is True


def test_codes_follow_enumeration_order_not_mention_order() -> None:
    codes = detect_behavioral_codes("Fui a misa y luego hablé con mi hijo")

    assert codes == [BehavioralCode.FAM, BehavioralCode.FE]


def test_codes_match_case_insensitively() -> None:
    assert BehavioralCode.FE in detect_behavioral_codes("Gracias a DIOS todo salió bien")


def test_no_codes_for_empty_text() -> None:
    assert detect_behavioral_codes("") == []
    assert detect_behavioral_codes(None) == []


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Estoy muy feliz hoy", EmotionalState.MUY_POSITIVO),
        ("Todo bien por aquí", EmotionalState.POSITIVO),
        ("Pues normal, como siempre", EmotionalState.NEUTRAL),
        ("Me siento mal de la rodilla", EmotionalState.NEGATIVO),
        ("Fue horrible la semana", EmotionalState.MUY_NEGATIVO),
        ("", EmotionalState.NEUTRAL),
    ],
)
def test_emotional_state_buckets(text: str, expected: EmotionalState) -> None:
    assert detect_emotional_state(text) == expected


def test_emotional_state_is_first_match_in_priority_order() -> None:
    # "bien" (positivo) and "terrible" (muy_negativo) both present
    assert detect_emotional_state("Dormí terrible pero ya estoy bien") == EmotionalState.POSITIVO


def test_emotion_keywords_match_whole_words_only() -> None:
    assert detect_emotional_state("Hice tamales para la cena") == EmotionalState.NEUTRAL


def test_topics_use_their_own_table() -> None:
    assert extract_topics("El doctor dijo que mi esposo debe comer mejor") == ["salud", "familia", "comida"]


def test_health_mentions_are_sentences_in_order_capped_at_five() -> None:
    text = ". ".join(f"Me duele {i}, tengo dolor" for i in range(7)) + ". Hoy llovió."

    mentions = extract_health_mentions(text)

    assert len(mentions) == 5
    assert mentions[0] == "Me duele 0, tengo dolor"
    assert mentions[4] == "Me duele 4, tengo dolor"


def test_family_mentions_skip_unrelated_sentences() -> None:
    text = "Hace calor! Mi nieta vino a verme? Comimos sopa."

    assert extract_family_mentions(text) == ["Mi nieta vino a verme"]


def test_crisis_phrase_alone_is_enough() -> None:
    text = "Todo bien con la comida, pero ya no puedo más"

    assert detect_crisis(text) is True
    assert analyze_transcript(text).crisis_detected is True


def test_no_crisis_in_ordinary_conversation() -> None:
    assert detect_crisis(LONELY_COOK) is False


def test_emergency_keywords_on_partial_transcripts() -> None:
    assert detect_emergency_keywords("creo que me caí en el baño") is True
    assert detect_emergency_keywords("todo tranquilo") is False


@pytest.mark.parametrize(
    ("codes", "state", "expected"),
    [
        ([BehavioralCode.SAL], EmotionalState.MUY_POSITIVO, True),
        ([BehavioralCode.GRA], EmotionalState.NEGATIVO, True),
        ([BehavioralCode.GRA, BehavioralCode.COM], EmotionalState.POSITIVO, False),
        ([], EmotionalState.NEUTRAL, False),
        (["PRE"], "neutral", True),
    ],
)
def test_follow_up_rule(codes, state, expected: bool) -> None:
    assert determine_follow_up(codes, state) is expected


def test_needs_and_action_items() -> None:
    codes = [BehavioralCode.SOL, BehavioralCode.SAL, BehavioralCode.MED]

    assert identify_needs(codes) == ["Necesita más contacto social", "Requiere atención médica"]
    assert generate_action_items(codes, EmotionalState.NEGATIVO) == [
        "Recordar sobre telemedicina gratuita",
        "Programar llamadas más frecuentes",
        "Llamar mañana para seguimiento",
        "Preguntar si necesita ayuda con medicamentos",
    ]


def test_analyze_transcript_is_deterministic() -> None:
    text = "Mi hijo está allá en Estados Unidos. Me preocupa el dinero. Gracias por llamar."

    first = analyze_transcript(text)
    second = analyze_transcript(text)

    assert first == second
    assert first.follow_up_needed is True
    assert first.summary.startswith("Estado emocional: positivo")
    assert "MIG" in first.summary
