# Models module - topics, generated results, persisted metadata records
from .topic import Topic, TopicFilters, PendingWork
from .metadata import (
    FALLBACK_REASONING,
    DifficultyBand,
    EmbeddingResult,
    SummaryResult,
    MetadataRecord,
)

__all__ = [
    'Topic',
    'TopicFilters',
    'PendingWork',
    'FALLBACK_REASONING',
    'DifficultyBand',
    'EmbeddingResult',
    'SummaryResult',
    'MetadataRecord',
]
