"""Embedding generation using the OpenAI embeddings API."""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Optional

import openai
from openai import OpenAI

from ..config import EmbeddingConfig
from ..exceptions import ApiError, EmbeddingError, MalformedResponseError
from ..llm.client import translate_openai_error
from ..logging_config import get_logger
from ..models import EmbeddingResult, Topic
from ..retry import DEFAULT_RETRYABLE, RetryPolicy

logger = get_logger('embedder')

FIELD_SEPARATOR = " | "
PATH_SEPARATOR = " → "

# A wrong-length response is retried like a transient failure; there is no
# safe synthetic embedding to fall back to.
EMBEDDING_RETRYABLE = DEFAULT_RETRYABLE + (MalformedResponseError,)


def build_embedding_text(topic: Topic) -> str:
    """Searchable text for a topic, most distinguishing fields first.

    Order: qualification level, subject, exam board, hierarchical path,
    topic name, topic code. Empty fields are skipped.
    """
    parts = [
        topic.qualification_level,
        topic.subject_name,
        topic.exam_board,
        PATH_SEPARATOR.join(topic.full_path),
        topic.topic_name,
        topic.topic_code,
    ]
    return FIELD_SEPARATOR.join(part for part in parts if part)


class EmbeddingService:
    """Generate topic embeddings in sub-batches under a concurrency cap."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        config: Optional[EmbeddingConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        client: Optional[OpenAI] = None,
    ):
        self.config = config or EmbeddingConfig()
        self.client = client or OpenAI(api_key=api_key, timeout=self.config.timeout_seconds, max_retries=0)
        base = retry_policy or RetryPolicy()
        self.retry_policy = RetryPolicy(
            max_attempts=base.max_attempts,
            initial_delay=base.initial_delay,
            max_delay=base.max_delay,
            backoff_factor=base.backoff_factor,
            jitter=base.jitter,
            retryable_exceptions=EMBEDDING_RETRYABLE,
        )

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        """One embeddings call; the response must match the request exactly.

        Raises:
            TransientApiError: On timeouts, connection errors, 429 and 5xx
            MalformedResponseError: On a count or dimension mismatch
        """
        try:
            response = self.client.embeddings.create(
                model=self.config.model,
                input=texts,
                encoding_format="float",
            )
        except openai.OpenAIError as e:
            raise translate_openai_error(e) from e

        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != len(texts):
            raise MalformedResponseError(
                f"Embedding count mismatch: sent {len(texts)}, received {len(data)}",
                provider='openai',
            )

        vectors = [list(item.embedding) for item in data]
        for vector in vectors:
            if len(vector) != self.config.dimensions:
                raise MalformedResponseError(
                    f"Embedding dimension mismatch: expected {self.config.dimensions}, got {len(vector)}",
                    provider='openai',
                )
        return vectors

    def _embed_batch(self, batch: list[Topic]) -> list[EmbeddingResult]:
        texts = [build_embedding_text(topic) for topic in batch]
        vectors = self.retry_policy.call(self.embed_texts, texts)
        return [EmbeddingResult.for_topic(topic, vector) for topic, vector in zip(batch, vectors)]

    def generate_embeddings(
        self,
        topics: list[Topic],
        on_progress: Optional[Callable[[int, int], None]] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> list[EmbeddingResult]:
        """
        Embed every topic, returning results in input order.

        Args:
            topics: Topics to embed
            on_progress: Callback (topics_done, total)
            stop_event: When set, batches not yet started are skipped and an
                empty list is returned

        Returns:
            One EmbeddingResult per topic, same length and order as ``topics``

        Raises:
            EmbeddingError: If any sub-batch still fails after retries
        """
        if not topics:
            return []

        size = self.config.batch_size
        batches = [topics[i:i + size] for i in range(0, len(topics), size)]
        results: list[Optional[list[EmbeddingResult]]] = [None] * len(batches)
        workers = min(self.config.max_concurrency, len(batches))

        logger.info(f"Embedding {len(topics)} topics in {len(batches)} batches (max {workers} concurrent)")

        def embed_unless_stopped(batch: list[Topic]) -> Optional[list[EmbeddingResult]]:
            if stop_event is not None and stop_event.is_set():
                return None
            return self._embed_batch(batch)

        done = 0
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='embed') as executor:
            futures = {executor.submit(embed_unless_stopped, batch): idx for idx, batch in enumerate(batches)}
            for future in as_completed(futures):
                idx = futures[future]
                try:
                    results[idx] = future.result()
                except ApiError as e:
                    for pending in futures:
                        pending.cancel()
                    batch_ids = [topic.topic_id for topic in batches[idx]]
                    logger.error(f"Embedding batch {idx + 1}/{len(batches)} failed: {e}")
                    raise EmbeddingError(
                        f"Embedding batch {idx + 1}/{len(batches)} failed after retries: {e}",
                        topic_ids=batch_ids,
                    ) from e

                if stop_event is not None and stop_event.is_set():
                    break
                done += len(batches[idx])
                if on_progress:
                    on_progress(done, len(topics))

            if stop_event is not None and stop_event.is_set():
                cancelled = sum(1 for pending in futures if pending.cancel())
                logger.info(f"Embeddings stopped early, {cancelled} batches not started")
                return []

        return [result for batch_results in results for result in batch_results]
