"""Destination store interface."""

from abc import ABC, abstractmethod
from typing import Optional

from ..models import TopicFilters


class TopicStore(ABC):
    """
    Paginated reads of the topic catalog and metadata ids, plus batch upserts.

    Implementations raise StoreError (built with ``exceptions.store_error``)
    for every failure, classified into a StoreErrorKind, so callers can decide
    what to retry without inspecting backend-specific messages.

    Supports context manager protocol for automatic cleanup.
    """

    @abstractmethod
    def fetch_topics_page(self, offset: int, limit: int,
                          filters: Optional[TopicFilters] = None) -> list[dict]:
        """
        Return up to ``limit`` topic rows ordered by topic_id, starting at ``offset``.

        Rows carry topic_id, topic_name, topic_code, topic_level, subject_name,
        exam_board, qualification_level and full_path.
        """
        pass

    @abstractmethod
    def fetch_metadata_ids_page(self, offset: int, limit: int) -> list[str]:
        """Return up to ``limit`` metadata topic ids ordered by topic_id."""
        pass

    @abstractmethod
    def upsert_metadata(self, rows: list[dict]) -> None:
        """
        Insert or overwrite metadata rows keyed by topic_id.

        The whole group either commits or raises; a raised StoreError means
        none of the rows in this call can be assumed written.
        """
        pass

    @abstractmethod
    def get_metadata(self, topic_id: str) -> Optional[dict]:
        """Return the metadata row for ``topic_id`` with ``embedding`` as a list of floats, or None."""
        pass

    def close(self) -> None:
        """Release any held connections."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
