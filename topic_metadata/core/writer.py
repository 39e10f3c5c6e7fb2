"""Resilient persistence: shrink-and-retry upserts.

A group that still fails after backoff retries is re-split at the next
smaller cascade size and each piece retried the same way, down to
single-record writes. A record that fails on its own is logged and skipped.

    chunk_sizes=[200, 5, 1]

    200 rows ──fail x3──> 40 groups of 5 ──fail x3──> 5 single rows ──fail x3──> skipped
"""

from dataclasses import dataclass, field
from typing import Optional, Sequence

from ..config import validate_chunk_sizes
from ..exceptions import RetryableStoreError, StoreError, StoreErrorKind
from ..logging_config import get_logger, log_exception
from ..models import MetadataRecord
from ..retry import RetryPolicy
from .store import TopicStore

logger = get_logger('writer')


@dataclass
class WriteFailure:
    """A record that could not be written even on its own."""
    topic_id: str
    kind: StoreErrorKind
    reason: str
    retryable: bool = False


@dataclass
class PersistResult:
    """Outcome of persisting one group of records."""
    written_ids: list[str] = field(default_factory=list)
    failures: list[WriteFailure] = field(default_factory=list)

    @property
    def written(self) -> int:
        return len(self.written_ids)

    @property
    def failed(self) -> int:
        return len(self.failures)


def _split(rows: Sequence[dict], size: int) -> list[list[dict]]:
    return [list(rows[i:i + size]) for i in range(0, len(rows), size)]


class ResilientWriter:
    """Upserts metadata records through a cascade of shrinking chunk sizes."""

    def __init__(
        self,
        store: TopicStore,
        chunk_sizes: Sequence[int] = (200, 5, 1),
        retry_policy: Optional[RetryPolicy] = None,
    ):
        validate_chunk_sizes(list(chunk_sizes))
        self.store = store
        self.chunk_sizes = tuple(chunk_sizes)
        base = retry_policy or RetryPolicy()
        self.retry_policy = RetryPolicy(
            max_attempts=base.max_attempts,
            initial_delay=base.initial_delay,
            max_delay=base.max_delay,
            backoff_factor=base.backoff_factor,
            jitter=base.jitter,
            retryable_exceptions=(RetryableStoreError,),
        )

    def persist(self, records: Sequence[MetadataRecord]) -> PersistResult:
        """Upsert every record or report, per record, why it could not be."""
        result = PersistResult()
        rows = [record.to_row() for record in records]
        for chunk in _split(rows, self.chunk_sizes[0]):
            self._write_group(chunk, 0, result)

        if result.failures:
            logger.warning(f"Persisted {result.written}/{len(rows)} records; {result.failed} skipped")
        else:
            logger.info(f"Persisted {result.written} records")
        return result

    def _next_level(self, level: int, group_size: int) -> Optional[int]:
        """First deeper level whose size actually splits this group."""
        for deeper in range(level + 1, len(self.chunk_sizes)):
            if self.chunk_sizes[deeper] < group_size:
                return deeper
        return None

    def _write_group(self, rows: list[dict], level: int, result: PersistResult) -> None:
        try:
            self.retry_policy.call(self.store.upsert_metadata, rows)
        except StoreError as e:
            deeper = self._next_level(level, len(rows))
            if deeper is not None:
                size = self.chunk_sizes[deeper]
                attempts = self.retry_policy.max_attempts if e.retryable else 1
                logger.warning(
                    f"Group of {len(rows)} failed ({e.kind.value}, {attempts} attempt(s)); "
                    f"retrying as groups of {size}"
                )
                for group in _split(rows, size):
                    self._write_group(group, deeper, result)
                return

            for row in rows:
                log_exception(logger, e, "Skipping record after full write cascade", topic_id=row['topic_id'])
                result.failures.append(WriteFailure(
                    topic_id=row['topic_id'],
                    kind=e.kind,
                    reason=e.reason or e.message,
                    retryable=e.retryable,
                ))
            return

        result.written_ids.extend(row['topic_id'] for row in rows)
