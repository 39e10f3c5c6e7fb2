"""Topic source reader: complete, ordered reads and the pending work set."""

from typing import Callable, Iterator, Optional, TypeVar

from ..logging_config import get_logger
from ..models import PendingWork, Topic, TopicFilters
from .store import TopicStore

logger = get_logger('source')

T = TypeVar('T')


class TopicSourceReader:
    """Pages through the store until a short page marks the end of data.

    Read failures propagate: reads are idempotent and cheap to redo, so a
    failed page fails the whole call rather than being retried here.
    """

    def __init__(self, store: TopicStore, page_size: int = 1000):
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")
        self.store = store
        self.page_size = page_size

    def _paginate(self, fetch_page: Callable[[int, int], list[T]]) -> Iterator[T]:
        offset = 0
        while True:
            page = fetch_page(offset, self.page_size)
            yield from page
            if len(page) < self.page_size:
                return
            offset += self.page_size

    def fetch_all_topics(self, filters: Optional[TopicFilters] = None) -> list[Topic]:
        """All catalog topics matching ``filters``, ordered by topic_id."""
        filters = filters or TopicFilters()
        topics = [
            Topic.from_row(row)
            for row in self._paginate(
                lambda offset, limit: self.store.fetch_topics_page(offset, limit, filters)
            )
        ]
        logger.info(f"Fetched {len(topics)} topics ({filters.describe()})")
        return topics

    def fetch_existing_metadata_ids(self) -> set[str]:
        """Topic ids that already have a metadata record."""
        ids = set(self._paginate(self.store.fetch_metadata_ids_page))
        logger.info(f"Found {len(ids)} topics with existing metadata")
        return ids

    def compute_pending_topics(self, filters: Optional[TopicFilters] = None) -> PendingWork:
        """Catalog topics minus those with metadata, in catalog order."""
        topics = self.fetch_all_topics(filters)
        existing = self.fetch_existing_metadata_ids()
        pending = [topic for topic in topics if topic.topic_id not in existing]
        work = PendingWork(
            topics=pending,
            total_topics=len(topics),
            with_metadata=len(topics) - len(pending),
        )
        logger.info(
            f"{work.with_metadata}/{work.total_topics} topics already have metadata, "
            f"{work.pending_count} need processing"
        )
        return work
