"""Pydantic schemas for LLM responses."""

from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ..models import DifficultyBand

MAX_SUMMARY_WORDS = 150

# Labels used by earlier prompt versions
DIFFICULTY_SYNONYMS = {
    "foundation": DifficultyBand.CORE,
    "basic": DifficultyBand.CORE,
    "intermediate": DifficultyBand.STANDARD,
    "advanced": DifficultyBand.CHALLENGE,
    "higher": DifficultyBand.CHALLENGE,
}


class TopicSummaryResponse(BaseModel):
    """Structured summary of a single curriculum topic."""
    topic_id: Optional[str] = Field(
        description="Echo of the topic id from the request",
        default=None
    )
    summary: str = Field(
        description="1-2 plain-English sentences: what the topic is and why it matters for the exam",
        min_length=1
    )
    difficulty_band: DifficultyBand = Field(
        description="core, standard, or challenge for a typical student at this level"
    )
    exam_importance: float = Field(
        description="How important the topic is for the exam (0.0-1.0)",
        ge=0.0,
        le=1.0
    )
    reasoning: str = Field(
        description="One sentence explaining the difficulty/importance choices",
        default=""
    )

    @field_validator('topic_id', mode='before')
    @classmethod
    def _stringify_id(cls, value):
        return None if value is None else str(value)

    @field_validator('summary')
    @classmethod
    def _bound_summary(cls, value: str) -> str:
        words = value.split()
        if len(words) > MAX_SUMMARY_WORDS:
            return " ".join(words[:MAX_SUMMARY_WORDS])
        return value.strip()

    @field_validator('difficulty_band', mode='before')
    @classmethod
    def _normalize_band(cls, value):
        if isinstance(value, str):
            key = value.strip().lower()
            return DIFFICULTY_SYNONYMS.get(key, key)
        return value
