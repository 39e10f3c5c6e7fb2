"""Generated results and the persisted metadata record."""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .topic import Topic

FALLBACK_REASONING = "Fallback due to API error"


class DifficultyBand(str, Enum):
    """Difficulty for a typical student at the topic's qualification level."""
    CORE = "core"            # Foundational, everyone must know it
    STANDARD = "standard"    # Normal expected level
    CHALLENGE = "challenge"  # Stretch material for higher marks


@dataclass(frozen=True)
class EmbeddingResult:
    """Embedding for one topic, with context copied for storage."""
    topic_id: str
    embedding: tuple[float, ...]
    subject_name: str
    exam_board: str
    qualification_level: str
    topic_level: int
    full_path: tuple[str, ...]

    @classmethod
    def for_topic(cls, topic: Topic, embedding: list[float]) -> 'EmbeddingResult':
        return cls(
            topic_id=topic.topic_id,
            embedding=tuple(float(x) for x in embedding),
            subject_name=topic.subject_name,
            exam_board=topic.exam_board,
            qualification_level=topic.qualification_level,
            topic_level=topic.topic_level,
            full_path=topic.full_path,
        )


@dataclass(frozen=True)
class SummaryResult:
    """AI-written (or fallback) summary for one topic."""
    topic_id: str
    summary: str
    difficulty_band: DifficultyBand
    exam_importance: float
    reasoning: str = ""

    def __post_init__(self):
        if not isinstance(self.difficulty_band, DifficultyBand):
            raise ValueError(f"Invalid difficulty band: {self.difficulty_band!r}")
        if not 0.0 <= self.exam_importance <= 1.0:
            raise ValueError(f"exam_importance out of range: {self.exam_importance}")

    @property
    def is_fallback(self) -> bool:
        return self.reasoning == FALLBACK_REASONING

    @classmethod
    def fallback(cls, topic: Topic) -> 'SummaryResult':
        """Deterministic stand-in used when the completion API fails."""
        return cls(
            topic_id=topic.topic_id,
            summary=f"Study topic: {topic.topic_name}. Part of {topic.subject_name} curriculum.",
            difficulty_band=DifficultyBand.STANDARD,
            exam_importance=0.5,
            reasoning=FALLBACK_REASONING,
        )


@dataclass(frozen=True)
class MetadataRecord:
    """One row of topic AI metadata, keyed uniquely by topic_id."""
    topic_id: str
    embedding: tuple[float, ...]
    summary: str
    difficulty_band: DifficultyBand
    exam_importance: float
    reasoning: str
    subject_name: str
    exam_board: str
    qualification_level: str
    topic_level: int
    full_path: tuple[str, ...]
    spec_version: str = "v1"
    is_active: bool = True
    generated_at: Optional[datetime] = None

    @classmethod
    def merge(cls, embedding: EmbeddingResult, summary: SummaryResult,
              spec_version: str = "v1",
              generated_at: Optional[datetime] = None) -> 'MetadataRecord':
        """Join results produced for the same topic."""
        if embedding.topic_id != summary.topic_id:
            raise ValueError(
                f"Cannot merge results for different topics: "
                f"{embedding.topic_id} != {summary.topic_id}"
            )
        return cls(
            topic_id=embedding.topic_id,
            embedding=embedding.embedding,
            summary=summary.summary,
            difficulty_band=summary.difficulty_band,
            exam_importance=summary.exam_importance,
            reasoning=summary.reasoning,
            subject_name=embedding.subject_name,
            exam_board=embedding.exam_board,
            qualification_level=embedding.qualification_level,
            topic_level=embedding.topic_level,
            full_path=embedding.full_path,
            spec_version=spec_version,
            generated_at=generated_at or datetime.now(timezone.utc),
        )

    def to_row(self) -> dict:
        """Serialize for the topic_ai_metadata table.

        The embedding is sent as a JSON string, which pgvector accepts.
        """
        generated = (self.generated_at or datetime.now(timezone.utc)).isoformat()
        return {
            'topic_id': self.topic_id,
            'embedding': json.dumps(list(self.embedding)),
            'plain_english_summary': self.summary,
            'difficulty_band': self.difficulty_band.value,
            'exam_importance': self.exam_importance,
            'reasoning': self.reasoning,
            'subject_name': self.subject_name,
            'exam_board': self.exam_board,
            'qualification_level': self.qualification_level,
            'topic_level': self.topic_level,
            'full_path': list(self.full_path),
            'is_active': self.is_active,
            'spec_version': self.spec_version,
            'generated_at': generated,
            'last_updated': generated,
        }
