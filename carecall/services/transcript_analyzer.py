"""
Transcript Analyzer.

Deterministic keyword classification of a call transcript: behavioral
codes, emotional state, topics, health/family mentions, crisis phrases,
and the follow-up decision. All functions are pure; the keyword tables
are static data so they can be extended or localized without touching
the matching logic.

Matching rules:
- Behavioral codes, topics, crisis phrases and mention extraction match
  keywords as substrings of the case-folded text.
- Emotional state matches keywords as whole words (``mal`` must not fire
  on ``tamales``) and returns the first bucket, in priority order, with
  any hit.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Iterable

from carecall.schemas.insight import BehavioralCode, EmotionalState, TranscriptAnalysis

MAX_MENTIONS = 5

BEHAVIORAL_CODE_LABELS: dict[BehavioralCode, str] = {
    BehavioralCode.SOL: "soledad",
    BehavioralCode.FAM: "familia",
    BehavioralCode.SAL: "salud",
    BehavioralCode.EMO: "emoción",
    BehavioralCode.REC: "recuerdos",
    BehavioralCode.PRE: "preocupación",
    BehavioralCode.GRA: "gratitud",
    BehavioralCode.RUT: "rutina",
    BehavioralCode.COM: "comida",
    BehavioralCode.FE: "fe",
    BehavioralCode.DIN: "dinero",
    BehavioralCode.MIG: "migración",
    BehavioralCode.TEC: "tecnología",
    BehavioralCode.VEC: "vecinos",
    BehavioralCode.MED: "medicamentos",
    BehavioralCode.SUE: "sueño",
}

BEHAVIORAL_CODE_KEYWORDS: dict[BehavioralCode, tuple[str, ...]] = {
    BehavioralCode.SOL: ("solo", "sola", "soledad", "extraño", "extrañar", "falta", "nadie"),
    BehavioralCode.FAM: ("hijo", "hija", "nieto", "nieta", "familia", "hermano", "hermana"),
    BehavioralCode.SAL: ("dolor", "enfermo", "doctor", "medicina", "hospital", "síntoma"),
    BehavioralCode.EMO: ("llorar", "triste", "feliz", "contento", "preocupado", "angustia"),
    BehavioralCode.REC: ("recuerdo", "antes", "cuando era", "hace años", "mi época"),
    BehavioralCode.PRE: ("preocupa", "miedo", "angustia", "nervios", "ansiedad"),
    BehavioralCode.GRA: ("gracias", "bendición", "agradezco", "qué bueno"),
    BehavioralCode.RUT: ("mañana", "todos los días", "siempre", "rutina", "costumbre"),
    BehavioralCode.COM: ("comida", "cocinar", "receta", "comer", "tamales", "sopa"),
    BehavioralCode.FE: ("dios", "iglesia", "misa", "rezar", "bendición", "virgen"),
    BehavioralCode.DIN: ("dinero", "caro", "pagar", "cuesta", "economía"),
    BehavioralCode.MIG: ("estados unidos", "allá", "cruzar", "frontera", "dólares"),
    BehavioralCode.TEC: ("celular", "teléfono", "internet", "mensaje", "video"),
    BehavioralCode.VEC: ("vecino", "vecina", "colonia", "barrio", "comunidad"),
    BehavioralCode.MED: ("pastilla", "medicina", "receta", "farmacia", "tomar"),
    BehavioralCode.SUE: ("dormir", "sueño", "insomnio", "descansar", "noche"),
}

# Dict order is the match priority.
EMOTION_KEYWORDS: dict[EmotionalState, tuple[str, ...]] = {
    EmotionalState.MUY_POSITIVO: ("feliz", "contento", "alegre", "maravilloso", "excelente"),
    EmotionalState.POSITIVO: ("bien", "bueno", "gracias", "bonito", "tranquilo"),
    EmotionalState.NEUTRAL: ("normal", "igual", "ahí", "más o menos"),
    EmotionalState.NEGATIVO: ("mal", "triste", "preocupado", "difícil", "cansado"),
    EmotionalState.MUY_NEGATIVO: ("terrible", "horrible", "llorar", "solo", "deprimido"),
}

TOPIC_KEYWORDS: dict[str, tuple[str, ...]] = {
    "salud": ("doctor", "medicina", "dolor", "enfermo", "hospital"),
    "familia": ("hijo", "hija", "nieto", "esposo", "hermano"),
    "comida": ("cocinar", "comida", "receta", "comer"),
    "soledad": ("solo", "extraño", "falta"),
    "dinero": ("dinero", "pagar", "caro", "cuesta"),
    "fe": ("dios", "iglesia", "misa", "rezar"),
    "recuerdos": ("antes", "recuerdo", "cuando era"),
}

HEALTH_KEYWORDS: tuple[str, ...] = (
    "dolor", "medicina", "pastilla", "doctor", "hospital",
    "enfermo", "síntoma", "presión", "azúcar", "diabetes",
)

FAMILY_KEYWORDS: tuple[str, ...] = (
    "hijo", "hija", "nieto", "nieta", "esposo",
    "esposa", "hermano", "hermana", "mamá", "papá",
)

CRISIS_PHRASES: tuple[str, ...] = (
    "me quiero morir",
    "no quiero vivir",
    "suicid",
    "acabar con todo",
    "ya no puedo más",
    "emergencia",
    "ambulancia",
)

# Shorter list used on live partial transcripts.
EMERGENCY_KEYWORDS: tuple[str, ...] = (
    "emergencia",
    "ambulancia",
    "hospital",
    "me muero",
    "no puedo respirar",
    "me caí",
    "sangre",
    "desmayo",
    "infarto",
    "suicid",
)

URGENT_CODES = frozenset({BehavioralCode.SOL, BehavioralCode.SAL, BehavioralCode.EMO, BehavioralCode.PRE})
NEGATIVE_STATES = frozenset({EmotionalState.NEGATIVO, EmotionalState.MUY_NEGATIVO})

NEEDS_BY_CODE: dict[BehavioralCode, str] = {
    BehavioralCode.SOL: "Necesita más contacto social",
    BehavioralCode.SAL: "Requiere atención médica",
    BehavioralCode.PRE: "Necesita apoyo emocional",
    BehavioralCode.DIN: "Preocupaciones económicas",
    BehavioralCode.TEC: "Ayuda con tecnología",
    BehavioralCode.SUE: "Problemas de sueño - revisar",
}

_SENTENCE_SPLIT = re.compile(r"[.!?]+")


def _fold(text: str | None) -> str:
    return (text or "").casefold()


def _contains_any(folded: str, keywords: Iterable[str]) -> bool:
    return any(kw in folded for kw in keywords)


@lru_cache(maxsize=None)
def _word_pattern(keywords: tuple[str, ...]) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(kw) for kw in keywords)
    return re.compile(rf"(?<!\w)(?:{alternatives})(?!\w)")


def detect_behavioral_codes(text: str | None) -> list[BehavioralCode]:
    """Codes whose keywords appear anywhere in the text, in enumeration order."""
    folded = _fold(text)
    return [
        code
        for code in BehavioralCode
        if _contains_any(folded, BEHAVIORAL_CODE_KEYWORDS[code])
    ]


def detect_emotional_state(text: str | None) -> EmotionalState:
    """First bucket (by priority) with a whole-word hit; ``neutral`` otherwise."""
    folded = _fold(text)
    for state, keywords in EMOTION_KEYWORDS.items():
        if _word_pattern(keywords).search(folded):
            return state
    return EmotionalState.NEUTRAL


def extract_topics(text: str | None) -> list[str]:
    folded = _fold(text)
    return [topic for topic, keywords in TOPIC_KEYWORDS.items() if _contains_any(folded, keywords)]


def _extract_mentions(text: str | None, keywords: tuple[str, ...]) -> list[str]:
    mentions: list[str] = []
    for sentence in _SENTENCE_SPLIT.split(text or ""):
        if _contains_any(sentence.casefold(), keywords):
            mentions.append(sentence.strip())
            if len(mentions) == MAX_MENTIONS:
                break
    return mentions


def extract_health_mentions(text: str | None) -> list[str]:
    """Up to five sentences, in transcript order, that mention health."""
    return _extract_mentions(text, HEALTH_KEYWORDS)


def extract_family_mentions(text: str | None) -> list[str]:
    """Up to five sentences, in transcript order, that mention family."""
    return _extract_mentions(text, FAMILY_KEYWORDS)


def detect_crisis(text: str | None) -> bool:
    return _contains_any(_fold(text), CRISIS_PHRASES)


def detect_emergency_keywords(text: str | None) -> bool:
    return _contains_any(_fold(text), EMERGENCY_KEYWORDS)


def determine_follow_up(codes: Iterable[BehavioralCode | str], emotional_state: EmotionalState | str) -> bool:
    """An urgent code OR a negative state is enough; there is no weighting."""
    code_values = {BehavioralCode(c) for c in codes}
    return bool(code_values & URGENT_CODES) or EmotionalState(emotional_state) in NEGATIVE_STATES


def identify_needs(codes: Iterable[BehavioralCode]) -> list[str]:
    return [NEEDS_BY_CODE[code] for code in codes if code in NEEDS_BY_CODE]


def generate_action_items(codes: Iterable[BehavioralCode], emotional_state: EmotionalState) -> list[str]:
    code_set = set(codes)
    actions: list[str] = []

    if BehavioralCode.SAL in code_set:
        actions.append("Recordar sobre telemedicina gratuita")
    if BehavioralCode.SOL in code_set:
        actions.append("Programar llamadas más frecuentes")
    if emotional_state in NEGATIVE_STATES:
        actions.append("Llamar mañana para seguimiento")
    if BehavioralCode.MED in code_set:
        actions.append("Preguntar si necesita ayuda con medicamentos")

    return actions


def generate_summary(
    codes: list[BehavioralCode],
    emotional_state: EmotionalState,
    topics: list[str],
) -> str:
    parts = [f"Estado emocional: {emotional_state.value}"]
    if codes:
        parts.append(f"Códigos: {', '.join(c.value for c in codes)}")
    if topics:
        parts.append(f"Temas: {', '.join(topics)}")
    return " | ".join(parts)


def analyze_transcript(text: str | None) -> TranscriptAnalysis:
    """Run every classifier over one transcript."""
    codes = detect_behavioral_codes(text)
    state = detect_emotional_state(text)
    topics = extract_topics(text)

    return TranscriptAnalysis(
        behavioral_codes=codes,
        emotional_state=state,
        topics=topics,
        health_mentions=extract_health_mentions(text),
        family_mentions=extract_family_mentions(text),
        needs_identified=identify_needs(codes),
        action_items=generate_action_items(codes, state),
        follow_up_needed=determine_follow_up(codes, state),
        crisis_detected=detect_crisis(text),
        summary=generate_summary(codes, state, topics),
    )
