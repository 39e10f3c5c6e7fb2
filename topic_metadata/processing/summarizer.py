"""Topic summary generation with a deterministic fallback."""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Optional

from ..config import LLMConfig
from ..exceptions import ApiError, FatalApiError
from ..llm import TOPIC_SUMMARY_SYSTEM, TopicSummaryResponse, topic_summary_prompt
from ..logging_config import get_logger
from ..models import SummaryResult, Topic
from ..retry import RetryPolicy

logger = get_logger('summarizer')


class SummaryGenerator:
    """Generate one summary per topic; API errors fall back per topic.

    Any ApiError that survives the retry policy (including malformed
    responses, which are not retried) yields ``SummaryResult.fallback``.
    FatalApiError is the exception: a rejected key, permission or model
    would fail every topic, so it propagates and stops the window.
    """

    def __init__(
        self,
        client,
        config: Optional[LLMConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.client = client
        self.config = config or LLMConfig()
        self.retry_policy = retry_policy or RetryPolicy()

    def summarize(self, topic: Topic) -> SummaryResult:
        """Summarize a single topic, falling back on failure."""
        try:
            response = self.retry_policy.call(
                self.client.complete_json,
                topic_summary_prompt(topic),
                TopicSummaryResponse,
                system=TOPIC_SUMMARY_SYSTEM,
            )
        except FatalApiError:
            raise
        except ApiError as e:
            logger.warning(f"Using fallback summary for topic {topic.topic_id} ('{topic.topic_name}'): {e}")
            return SummaryResult.fallback(topic)

        return SummaryResult(
            topic_id=topic.topic_id,
            summary=response.summary,
            difficulty_band=response.difficulty_band,
            exam_importance=response.exam_importance,
            reasoning=response.reasoning,
        )

    def generate_summaries(
        self,
        topics: list[Topic],
        on_progress: Optional[Callable[[int, int], None]] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> list[SummaryResult]:
        """
        Summarize every topic, returning results in input order.

        Args:
            topics: Topics to summarize
            on_progress: Callback (topics_done, total)
            stop_event: When set, topics not yet started are skipped and an
                empty list is returned

        Returns:
            One SummaryResult per topic, same length and order as ``topics``

        Raises:
            FatalApiError: The provider rejected the request outright
        """
        if not topics:
            return []

        results: list[Optional[SummaryResult]] = [None] * len(topics)
        workers = min(self.config.max_concurrency, len(topics))

        logger.info(f"Summarizing {len(topics)} topics (max {workers} concurrent)")

        def summarize_unless_stopped(topic: Topic) -> Optional[SummaryResult]:
            if stop_event is not None and stop_event.is_set():
                return None
            return self.summarize(topic)

        done = 0
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='summary') as executor:
            futures = {executor.submit(summarize_unless_stopped, topic): idx for idx, topic in enumerate(topics)}
            try:
                for future in as_completed(futures):
                    results[futures[future]] = future.result()
                    if stop_event is not None and stop_event.is_set():
                        break
                    done += 1
                    if on_progress:
                        on_progress(done, len(topics))
            except FatalApiError:
                for pending in futures:
                    pending.cancel()
                raise

            if stop_event is not None and stop_event.is_set():
                cancelled = sum(1 for pending in futures if pending.cancel())
                logger.info(f"Summaries stopped early, {cancelled} topics not started")
                return []

        fallbacks = sum(1 for result in results if result.is_fallback)
        if fallbacks:
            logger.warning(f"{fallbacks}/{len(topics)} summaries used the fallback")

        return results
