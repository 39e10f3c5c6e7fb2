# Processing module - windowing, embedding and summary generation
from .windows import iter_windows, count_windows
from .embedder import EmbeddingService, build_embedding_text
from .summarizer import SummaryGenerator

__all__ = [
    'iter_windows',
    'count_windows',
    'EmbeddingService',
    'build_embedding_text',
    'SummaryGenerator',
]
