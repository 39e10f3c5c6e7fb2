"""Pipeline driver: pending set → windows → generate → persist → report.

State machine:
    IDLE → COMPUTING_PENDING → DONE                         (nothing pending / dry run)
    IDLE → COMPUTING_PENDING → PROCESSING_WINDOW[i] ... → DONE
    any window → ABORTED                                    (embedding failure)

Partial item failures never abort: summary failures become fallback records
and unwritable records are skipped and listed in the report.
"""

import signal
import threading
from collections import Counter
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from ..config import Config
from ..exceptions import ConfigurationError, EmbeddingError, FatalApiError, RunAbortedError
from ..llm import create_completion_client
from ..logging_config import get_logger
from ..models import MetadataRecord, PendingWork, TopicFilters
from ..processing import EmbeddingService, SummaryGenerator, count_windows, iter_windows
from ..retry import RetryPolicy
from .database import SQLiteTopicStore
from .source import TopicSourceReader
from .store import TopicStore
from .supabase_store import SupabaseTopicStore
from .writer import ResilientWriter, WriteFailure

logger = get_logger('pipeline')

# Per-topic token estimates and USD prices per 1M tokens
EMBEDDING_TOKENS_PER_TOPIC = 50
SUMMARY_TOKENS_PER_TOPIC = 200
EMBEDDING_PRICE_PER_M = 0.02
SUMMARY_PRICE_PER_M = 0.15
TOPICS_PER_MINUTE = 500


class RunState(str, Enum):
    """Driver lifecycle states."""
    IDLE = "idle"
    COMPUTING_PENDING = "computing_pending"
    PROCESSING_WINDOW = "processing_window"
    DONE = "done"
    ABORTED = "aborted"


@dataclass(frozen=True)
class CostEstimate:
    """Rough API cost and duration for processing a number of topics."""
    topics: int
    embedding_cost: float
    summary_cost: float
    minutes: int

    @property
    def total_cost(self) -> float:
        return self.embedding_cost + self.summary_cost


def estimate_cost(topic_count: int) -> CostEstimate:
    """Estimate cost from per-topic token counts and list prices."""
    return CostEstimate(
        topics=topic_count,
        embedding_cost=topic_count * EMBEDDING_TOKENS_PER_TOPIC / 1_000_000 * EMBEDDING_PRICE_PER_M,
        summary_cost=topic_count * SUMMARY_TOKENS_PER_TOPIC / 1_000_000 * SUMMARY_PRICE_PER_M,
        minutes=-(-topic_count // TOPICS_PER_MINUTE),
    )


def breakdown_by_board(work: PendingWork) -> dict[str, int]:
    """Pending topic counts keyed by 'exam_board qualification_level'."""
    counts = Counter(f"{t.exam_board} {t.qualification_level}" for t in work.topics)
    return dict(sorted(counts.items()))


@dataclass
class WindowReport:
    """Outcome of one committed window."""
    index: int
    topics: int
    written: int
    failed: int
    fallback_summaries: int


@dataclass
class RunReport:
    """Aggregate statistics accumulated and returned by the driver."""
    filters: TopicFilters = field(default_factory=TopicFilters)
    state: RunState = RunState.IDLE
    dry_run: bool = False
    total_topics: int = 0
    with_metadata: int = 0
    planned: int = 0
    breakdown: dict[str, int] = field(default_factory=dict)
    windows_total: int = 0
    windows: list[WindowReport] = field(default_factory=list)
    failed_records: list[WriteFailure] = field(default_factory=list)
    interrupted: bool = False
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def pending(self) -> int:
        return self.total_topics - self.with_metadata

    @property
    def coverage_percent(self) -> float:
        if not self.total_topics:
            return 100.0
        return self.with_metadata / self.total_topics * 100

    @property
    def records_written(self) -> int:
        return sum(w.written for w in self.windows)

    @property
    def fallback_summaries(self) -> int:
        return sum(w.fallback_summaries for w in self.windows)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'state': self.state.value,
            'filters': self.filters.as_columns(),
            'dry_run': self.dry_run,
            'total_topics': self.total_topics,
            'with_metadata': self.with_metadata,
            'pending': self.pending,
            'coverage_percent': round(self.coverage_percent, 1),
            'planned': self.planned,
            'breakdown': self.breakdown,
            'windows_total': self.windows_total,
            'windows_completed': len(self.windows),
            'records_written': self.records_written,
            'fallback_summaries': self.fallback_summaries,
            'failed_records': [f.topic_id for f in self.failed_records],
            'interrupted': self.interrupted,
            'error': self.error,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }


class PipelineDriver:
    """Runs windows strictly in sequence; one window's generators run side by side."""

    def __init__(
        self,
        reader: TopicSourceReader,
        embedder: Optional[EmbeddingService],
        summarizer: Optional[SummaryGenerator],
        writer: Optional[ResilientWriter],
        window_size: int = 2000,
        spec_version: str = "v1",
        on_progress: Optional[Callable[[str, int, int, int], None]] = None,
        on_window_complete: Optional[Callable[[WindowReport, RunReport], None]] = None,
    ):
        """
        Args:
            reader: Source of the catalog and existing metadata ids
            embedder: Embedding generator (unused in dry runs)
            summarizer: Summary generator (unused in dry runs)
            writer: Persistence writer (unused in dry runs)
            window_size: Topics per window
            spec_version: Version tag stored on each record
            on_progress: Callback (stage, window_number, done, total)
            on_window_complete: Callback after each window commits
        """
        if window_size < 1:
            raise ValueError(f"window_size must be >= 1, got {window_size}")
        self.reader = reader
        self.embedder = embedder
        self.summarizer = summarizer
        self.writer = writer
        self.window_size = window_size
        self.spec_version = spec_version
        self.on_progress = on_progress
        self.on_window_complete = on_window_complete

        self._state = RunState.IDLE
        self._stop_requested = False

    @property
    def state(self) -> RunState:
        return self._state

    def request_stop(self) -> None:
        """Finish the current window, then stop dispatching new ones."""
        self._stop_requested = True

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully."""
        sig_name = signal.Signals(signum).name
        logger.warning(f"Received {sig_name}, stopping after the current window...")
        self.request_stop()

    def install_signal_handlers(self) -> None:
        """Route SIGINT/SIGTERM to a graceful stop (main thread only)."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def plan(self, filters: Optional[TopicFilters] = None, limit: Optional[int] = None) -> PendingWork:
        """Compute pending work, optionally capped to the first ``limit`` topics."""
        self._state = RunState.COMPUTING_PENDING
        work = self.reader.compute_pending_topics(filters)
        if limit is not None and limit < work.pending_count:
            logger.info(f"Limiting run to {limit} of {work.pending_count} pending topics")
            work.topics = work.topics[:limit]
        return work

    def run(
        self,
        filters: Optional[TopicFilters] = None,
        limit: Optional[int] = None,
        dry_run: bool = False,
        before_processing: Optional[Callable[[PendingWork], None]] = None,
    ) -> RunReport:
        """
        Execute one run and return its coverage report.

        Args:
            filters: Restrict the run to a board and/or subject
            limit: Process at most this many pending topics
            dry_run: Report pending counts without calling any API or writing
            before_processing: Hook called with the plan before the first
                               window (used for confirmation delays)

        Returns:
            RunReport with total/with-metadata/pending/coverage

        Raises:
            RunAbortedError: If a window's embeddings fail after retries or the
                completion provider rejects the credentials or model
            ConfigurationError: If a driver built for dry runs is asked to process
        """
        if not dry_run and any(part is None for part in (self.embedder, self.summarizer, self.writer)):
            raise ConfigurationError(
                "This pipeline was built for dry runs only; rebuild it with dry_run=False to process topics",
                config_key='dry_run',
            )

        filters = filters or TopicFilters()
        self._stop_requested = False
        report = RunReport(filters=filters, dry_run=dry_run, started_at=datetime.now(timezone.utc))

        work = self.plan(filters, limit)
        report.total_topics = work.total_topics
        report.with_metadata = work.with_metadata
        report.planned = work.pending_count
        report.breakdown = breakdown_by_board(work)
        report.windows_total = count_windows(work.pending_count, self.window_size)

        if dry_run or not work.topics:
            if not work.topics:
                logger.info("All topics already have metadata. Nothing to do!")
            return self._finish(report, RunState.DONE)

        if before_processing:
            before_processing(work)

        for index, window in enumerate(iter_windows(work.topics, self.window_size), 1):
            if self._stop_requested:
                report.interrupted = True
                logger.warning(f"Stopped before window {index}/{report.windows_total}")
                break

            self._state = RunState.PROCESSING_WINDOW
            logger.info(f"Window {index}/{report.windows_total}: {len(window)} topics")
            try:
                window_report = self._process_window(index, window, report)
            except (EmbeddingError, FatalApiError) as e:
                report.error = str(e)
                self._finish(report, RunState.ABORTED)
                raise RunAbortedError(f"Run aborted in window {index}: {e}", report=report) from e

            if self.on_window_complete:
                self.on_window_complete(window_report, report)

        return self._finish(report, RunState.DONE)

    def _process_window(self, index: int, topics: list, report: RunReport) -> WindowReport:
        def progress(stage: str):
            if not self.on_progress:
                return None
            return lambda done, total: self.on_progress(stage, index, done, total)

        stop = threading.Event()
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix='window') as executor:
            embed_future = executor.submit(
                self.embedder.generate_embeddings, topics, progress('embeddings'), stop_event=stop,
            )
            summary_future = executor.submit(
                self.summarizer.generate_summaries, topics, progress('summaries'), stop_event=stop,
            )
            finished, _ = wait([embed_future, summary_future], return_when=FIRST_EXCEPTION)
            if any(future.exception() is not None for future in finished):
                # Nothing from this window will be written; stop the other generator
                stop.set()
            embeddings = embed_future.result()
            summaries = summary_future.result()

        if not len(embeddings) == len(summaries) == len(topics):
            raise RuntimeError(
                f"Generator output misaligned: {len(topics)} topics, "
                f"{len(embeddings)} embeddings, {len(summaries)} summaries"
            )

        generated_at = datetime.now(timezone.utc)
        records = [
            MetadataRecord.merge(embedding, summary, spec_version=self.spec_version, generated_at=generated_at)
            for embedding, summary in zip(embeddings, summaries)
        ]

        result = self.writer.persist(records)

        window_report = WindowReport(
            index=index,
            topics=len(topics),
            written=result.written,
            failed=result.failed,
            fallback_summaries=sum(1 for s in summaries if s.is_fallback),
        )
        report.windows.append(window_report)
        report.failed_records.extend(result.failures)
        report.with_metadata += result.written

        logger.info(
            f"Window {index} complete: {result.written} saved, {result.failed} skipped, "
            f"{window_report.fallback_summaries} fallback summaries | coverage "
            f"{report.with_metadata}/{report.total_topics} ({report.coverage_percent:.1f}%)",
            extra={'window': index},
        )
        return window_report

    def _finish(self, report: RunReport, state: RunState) -> RunReport:
        self._state = state
        report.state = state
        report.finished_at = datetime.now(timezone.utc)
        logger.info(
            f"Run {state.value}: {report.with_metadata}/{report.total_topics} topics have metadata "
            f"({report.coverage_percent:.1f}%), {report.pending} pending"
        )
        return report


def create_store(config: Config) -> TopicStore:
    """Build the destination store selected by ``store.backend``."""
    if config.store.backend == 'sqlite':
        return SQLiteTopicStore(config.store.sqlite_path, timeout=config.store.timeout_seconds)
    return SupabaseTopicStore(
        url=config.supabase_url,
        key=config.supabase_key,
        config=config.store,
    )


def build_pipeline(
    config: Config,
    dry_run: bool = False,
    store: Optional[TopicStore] = None,
    **driver_kwargs,
) -> PipelineDriver:
    """
    Validate configuration and wire up a driver.

    Validation happens before any client is constructed, so a configuration
    error never reaches an external API. Dry runs get no API clients at all.

    Raises:
        ConfigurationError: On missing credentials or invalid settings
    """
    config.validate(dry_run=dry_run)

    store = store or create_store(config)
    reader = TopicSourceReader(store, page_size=config.store.page_size)

    if dry_run:
        return PipelineDriver(reader, None, None, None, window_size=config.batch.window_size, **driver_kwargs)

    policy = RetryPolicy.from_config(config.retry)
    embedder = EmbeddingService(
        api_key=config.openai_api_key,
        config=config.embeddings,
        retry_policy=policy,
    )
    summarizer = SummaryGenerator(
        client=create_completion_client(config),
        config=config.llm,
        retry_policy=policy,
    )
    writer = ResilientWriter(store, chunk_sizes=config.batch.chunk_sizes, retry_policy=policy)

    return PipelineDriver(
        reader,
        embedder,
        summarizer,
        writer,
        window_size=config.batch.window_size,
        spec_version=config.store.spec_version,
        **driver_kwargs,
    )
