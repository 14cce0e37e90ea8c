"""
Data models for transcript analysis results and stored insights.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EmotionalState(str, Enum):
    """Ordered from very positive to very negative; also the match priority."""
    MUY_POSITIVO = "muy_positivo"
    POSITIVO = "positivo"
    NEUTRAL = "neutral"
    NEGATIVO = "negativo"
    MUY_NEGATIVO = "muy_negativo"


class BehavioralCode(str, Enum):
    """The 16 behavioral codes, in detection (emission) order."""
    SOL = "SOL"
    FAM = "FAM"
    SAL = "SAL"
    EMO = "EMO"
    REC = "REC"
    PRE = "PRE"
    GRA = "GRA"
    RUT = "RUT"
    COM = "COM"
    FE = "FE"
    DIN = "DIN"
    MIG = "MIG"
    TEC = "TEC"
    VEC = "VEC"
    MED = "MED"
    SUE = "SUE"


class TranscriptAnalysis(BaseModel):
    """Everything the analyzer derives from one transcript."""
    behavioral_codes: list[BehavioralCode] = Field(default_factory=list)
    emotional_state: EmotionalState = EmotionalState.NEUTRAL
    topics: list[str] = Field(default_factory=list)
    health_mentions: list[str] = Field(default_factory=list)
    family_mentions: list[str] = Field(default_factory=list)
    needs_identified: list[str] = Field(default_factory=list)
    action_items: list[str] = Field(default_factory=list)
    follow_up_needed: bool = False
    crisis_detected: bool = False
    summary: str = ""


class Insight(BaseModel):
    """Immutable per-call analysis record written to the Relational Store."""
    call_id: str
    user_id: str
    behavioral_codes: list[str]
    emotional_state: str
    health_mentions: list[str] = Field(default_factory=list)
    family_mentions: list[str] = Field(default_factory=list)
    needs_identified: list[str] = Field(default_factory=list)
    action_items: list[str] = Field(default_factory=list)
    crisis_detected: bool = False
    summary: Optional[str] = None

    @classmethod
    def from_analysis(cls, call_id: str, user_id: str, analysis: TranscriptAnalysis) -> Insight:
        return cls(
            call_id=call_id,
            user_id=user_id,
            behavioral_codes=[c.value for c in analysis.behavioral_codes],
            emotional_state=analysis.emotional_state.value,
            health_mentions=analysis.health_mentions,
            family_mentions=analysis.family_mentions,
            needs_identified=analysis.needs_identified,
            action_items=analysis.action_items,
            crisis_detected=analysis.crisis_detected,
            summary=analysis.summary,
        )

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class ConversationDocument(BaseModel):
    """Anonymized conversation sent to the similarity index."""
    content: str
    emotional_state: str
    behavioral_codes: list[str] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)
    age_group: str = "desconocido"
    region: str = "mexico"
    call_duration: int = 0
    timestamp: datetime

    def to_properties(self) -> dict[str, Any]:
        """Weaviate property names."""
        return {
            "content": self.content,
            "emotionalState": self.emotional_state,
            "behavioralCodes": self.behavioral_codes,
            "topics": self.topics,
            "ageGroup": self.age_group,
            "region": self.region,
            "callDuration": self.call_duration,
            "timestamp": self.timestamp.isoformat(),
        }
