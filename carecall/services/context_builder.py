"""
Call context construction.

Turns the user record and recent call history into the variable values
the Voice Platform assistant receives when a call is placed, and into
the fuller briefing (history analysis, conversation starters, similar
anonymized patterns) served for operators.
"""

from __future__ import annotations

from collections import Counter
from datetime import date, datetime, timezone
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field

from carecall.logging_config import get_logger

logger = get_logger(__name__)

FIRST_CALL_TOPICS = "primera llamada"

EMOTION_WEIGHTS = {
    "muy_positivo": 2,
    "positivo": 1,
    "neutral": 0,
    "negativo": -1,
    "muy_negativo": -2,
}
NEGATIVE_SENTIMENTS = frozenset({"negativo", "muy_negativo"})

# Calls that weigh double in the emotional trend
RECENT_CALLS = 3
SIMILAR_PATTERN_LIMIT = 3


class PatternSource(Protocol):
    async def query_similar(self, topic_query: str, limit: int = 5) -> list[dict[str, Any]]: ...


class HistoryAnalysis(BaseModel):
    dominant_topics: list[str] = Field(default_factory=list)
    emotional_trend: str = "unknown"
    frequent_codes: list[str] = Field(default_factory=list)
    pending_follow_ups: list[dict[str, Any]] = Field(default_factory=list)
    topics_to_revisit: list[str] = Field(default_factory=list)
    topics_to_avoid: list[str] = Field(default_factory=list)


def calculate_age(birth_date: Any, today: Optional[date] = None) -> int | None:
    """Whole years since ``birth_date`` (ISO string or date); None if unknown."""
    if not birth_date:
        return None
    if isinstance(birth_date, datetime):
        birth = birth_date.date()
    elif isinstance(birth_date, date):
        birth = birth_date
    else:
        try:
            birth = date.fromisoformat(str(birth_date)[:10])
        except ValueError:
            return None

    today = today or date.today()
    age = today.year - birth.year
    if (today.month, today.day) < (birth.month, birth.day):
        age -= 1
    return age


def build_call_context(
    user: dict[str, Any],
    call_history: list[dict[str, Any]],
    today: Optional[date] = None,
) -> dict[str, Any]:
    """
    Build the assistant variables for one call.

    ``call_history`` is expected newest first, as returned by
    ``DatabaseClient.get_call_history``.
    """
    last_call = call_history[0] if call_history else {}
    last_topics = ", ".join(last_call.get("topics_discussed") or []) or FIRST_CALL_TOPICS

    return {
        "user_name": user.get("name"),
        "user_age": calculate_age(user.get("birth_date"), today=today),
        "migrant_name": user.get("migrant_name") or "su familiar",
        "relationship": user.get("relationship") or "familiar",
        "companion": user.get("companion") or "Lupita",
        "previous_calls": len(call_history),
        "last_topics": last_topics,
        "last_emotional_state": last_call.get("sentiment") or "neutral",
        "special_notes": "Seguimiento pendiente" if last_call.get("follow_up_needed") else "",
    }


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif value:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def days_since(value: Any, now: Optional[datetime] = None) -> int | None:
    """Whole days between ``value`` and ``now``; None when unknown."""
    then = _parse_timestamp(value)
    if then is None:
        return None
    now = now or datetime.now(timezone.utc)
    return abs(now - then).days


def calculate_emotional_trend(emotions: list[str]) -> str:
    """
    Weighted trend of the sentiments of past calls, newest first.

    The most recent calls count double. A single call reports its own
    sentiment; no calls report ``unknown``.
    """
    if not emotions:
        return "unknown"
    if len(emotions) == 1:
        return emotions[0]

    recent, older = emotions[:RECENT_CALLS], emotions[RECENT_CALLS:]
    score = sum(EMOTION_WEIGHTS.get(e, 0) * 2 for e in recent)
    score += sum(EMOTION_WEIGHTS.get(e, 0) for e in older)
    average = score / (len(recent) * 2 + len(older))

    if average >= 1:
        return "mejorando"
    if average >= 0:
        return "estable_positivo"
    if average >= -0.5:
        return "estable"
    if average >= -1:
        return "estable_negativo"
    return "necesita_atencion"


def identify_negative_topics(call_history: list[dict[str, Any]]) -> list[str]:
    """Topics of calls that went badly, first three in history order."""
    topics: list[str] = []
    for call in call_history:
        if call.get("sentiment") not in NEGATIVE_SENTIMENTS:
            continue
        for topic in call.get("topics_discussed") or []:
            if topic not in topics:
                topics.append(topic)
    return topics[:3]


def analyze_call_history(call_history: list[dict[str, Any]]) -> HistoryAnalysis:
    if not call_history:
        return HistoryAnalysis()

    topic_counts: Counter[str] = Counter()
    code_counts: Counter[str] = Counter()
    emotions: list[str] = []
    pending: list[dict[str, Any]] = []

    for call in call_history:
        topic_counts.update(call.get("topics_discussed") or [])
        code_counts.update(call.get("behavioral_codes") or [])
        if call.get("sentiment"):
            emotions.append(call["sentiment"])
        if call.get("follow_up_needed") and not call.get("follow_up_completed"):
            pending.append({
                "call_id": call.get("external_call_id") or call.get("id"),
                "date": call.get("created_at"),
                "reason": call.get("follow_up_reason"),
            })

    return HistoryAnalysis(
        dominant_topics=[topic for topic, _ in topic_counts.most_common(5)],
        emotional_trend=calculate_emotional_trend(emotions),
        frequent_codes=[code for code, _ in code_counts.most_common(5)],
        pending_follow_ups=pending,
        topics_to_revisit=(call_history[0].get("topics_discussed") or [])[:3],
        topics_to_avoid=identify_negative_topics(call_history),
    )


def generate_conversation_starters(user: dict[str, Any], analysis: HistoryAnalysis) -> list[str]:
    name = user.get("name") or ""
    companion = user.get("companion") or "Lupita"

    if not analysis.dominant_topics:
        migrant = user.get("migrant_name") or "Su familiar"
        return [
            f"¡Hola {name}! Soy {companion}. {migrant} me pidió que la llamara "
            "para conocerla. ¿Cómo amaneció hoy?"
        ]

    starters = []
    revisit = analysis.topics_to_revisit
    if "salud" in revisit:
        starters.append(f"¡Hola {name}! ¿Cómo se ha sentido? La última vez me platicó que andaba un poco malita.")
    if "familia" in revisit:
        starters.append(f"¡Hola {name}! ¿Cómo está la familia? ¿Ya vio a sus nietos?")
    if "comida" in revisit:
        starters.append(
            f"¡Hola {name}! ¿Qué cocinó de rico estos días? Me quedé pensando en esa receta que me platicó."
        )
    if not starters:
        starters.append(f"¡Hola {name}! ¿Cómo ha estado? Ya la extrañaba.")
    return starters


async def get_similar_patterns(index: PatternSource, topics: list[str]) -> list[dict[str, Any]]:
    """Anonymized patterns from conversations on the same topics; empty on failure."""
    if not topics:
        return []
    try:
        similar = await index.query_similar(" ".join(topics), limit=SIMILAR_PATTERN_LIMIT)
    except Exception as e:
        logger.error("similar_patterns_error", topics=topics, error=str(e))
        return []

    return [
        {
            "topics": conversation.get("topics"),
            "emotional_state": conversation.get("emotionalState"),
            "effective_responses": conversation.get("behavioralCodes"),
        }
        for conversation in similar
    ]


def build_full_context(
    user: dict[str, Any],
    call_history: list[dict[str, Any]],
    similar_patterns: Optional[list[dict[str, Any]]] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    analysis = analyze_call_history(call_history)
    last_call = call_history[0] if call_history else {}
    full_name = " ".join(p for p in (user.get("name"), user.get("last_name")) if p)

    return {
        "user_id": user.get("id"),
        "user_name": user.get("name"),
        "user_full_name": full_name,
        "user_age": calculate_age(user.get("birth_date"), today=now.date()),
        "migrant_name": user.get("migrant_name") or "su familiar",
        "relationship": user.get("relationship") or "familiar",
        "companion": user.get("companion") or "Lupita",
        "total_calls": len(call_history),
        "is_first_call": not call_history,
        "last_call_date": last_call.get("created_at"),
        "days_since_last_call": days_since(last_call.get("created_at"), now=now),
        "dominant_topics": analysis.dominant_topics,
        "emotional_trend": analysis.emotional_trend,
        "frequent_codes": analysis.frequent_codes,
        "pending_follow_ups": analysis.pending_follow_ups,
        "conversation_starters": generate_conversation_starters(user, analysis),
        "topics_to_revisit": analysis.topics_to_revisit,
        "topics_to_avoid": analysis.topics_to_avoid,
        "similar_patterns": similar_patterns or [],
        "context_built_at": now.isoformat(),
    }


def generate_briefing(context: dict[str, Any]) -> str:
    """Plain-text operator briefing for the next call."""
    lines = [
        "=== BRIEFING PARA LLAMADA ===",
        f"Usuario: {context['user_full_name']}, {context['user_age'] or '?'} años",
        f"Familiar en USA: {context['migrant_name']} ({context['relationship']})",
        f"Llamadas anteriores: {context['total_calls']}",
    ]

    if context["is_first_call"]:
        lines.append("\nPRIMERA LLAMADA - Enfócate en conocerla y generar confianza")
    else:
        lines.append(f"Última llamada: hace {context['days_since_last_call']} días")
        lines.append(f"Tendencia emocional: {context['emotional_trend']}")
        if context["topics_to_revisit"]:
            lines.append(f"\nTemas para retomar: {', '.join(context['topics_to_revisit'])}")
        if context["pending_follow_ups"]:
            lines.append(f"\nSeguimientos pendientes: {len(context['pending_follow_ups'])}")

    if context["topics_to_avoid"]:
        lines.append(f"\nTemas sensibles: {', '.join(context['topics_to_avoid'])}")

    lines.append("\nSugerencia de inicio:")
    lines.append(context["conversation_starters"][0])
    return "\n".join(lines)
