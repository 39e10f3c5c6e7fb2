"""Tests for windowing, embedding and summary generation."""

import threading
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from conftest import DIMENSIONS, FakeCompletionClient, embedding_response, make_topic
from topic_metadata.config import LLMConfig
from topic_metadata.exceptions import ApiError, EmbeddingError, FatalApiError, MalformedResponseError
from topic_metadata.models import FALLBACK_REASONING, DifficultyBand
from topic_metadata.processing import (
    EmbeddingService,
    SummaryGenerator,
    build_embedding_text,
    count_windows,
    iter_windows,
)
from topic_metadata.retry import RetryPolicy


class TestWindows:
    """Tests for iter_windows and count_windows."""

    def test_covers_sequence_in_order(self):
        """Should yield non-overlapping slices with only the last short."""
        windows = list(iter_windows(list(range(7)), 3))
        assert windows == [[0, 1, 2], [3, 4, 5], [6]]
        assert count_windows(7, 3) == 3

    def test_empty_sequence(self):
        """Should yield nothing for no pending topics."""
        assert list(iter_windows([], 5)) == []
        assert count_windows(0, 5) == 0

    def test_rejects_zero_size(self):
        """Should reject a non-positive window size."""
        with pytest.raises(ValueError):
            list(iter_windows([1], 0))


class TestBuildEmbeddingText:
    """Tests for build_embedding_text."""

    def test_field_order(self):
        """Should put level, subject and board ahead of path, name and code."""
        topic = make_topic(1, topic_name="Osmosis", topic_code="4.1.3",
                           full_path=("Cell biology", "Transport", "Osmosis"))
        assert build_embedding_text(topic) == (
            "GCSE | Biology | AQA | Cell biology → Transport → Osmosis | Osmosis | 4.1.3"
        )

    def test_skips_empty_fields(self):
        """Should leave out a missing topic code."""
        topic = make_topic(1, topic_code=None, full_path=("Topic 1",))
        assert build_embedding_text(topic) == "GCSE | Biology | AQA | Topic 1 | Topic 1"


class TestEmbeddingService:
    """Tests for EmbeddingService."""

    @pytest.fixture
    def service(self, mock_openai, embedding_config):
        return EmbeddingService(
            config=embedding_config,
            retry_policy=RetryPolicy(max_attempts=3),
            client=mock_openai,
        )

    def test_preserves_order_and_length(self, service, mock_openai):
        """Should return one result per topic, in input order, across sub-batches."""
        topics = [make_topic(n) for n in range(1, 6)]

        results = service.generate_embeddings(topics)

        assert [r.topic_id for r in results] == [t.topic_id for t in topics]
        assert mock_openai.embeddings.create.call_count == 3
        assert all(len(r.embedding) == DIMENSIONS for r in results)

    def test_reorders_by_response_index(self, service, mock_openai):
        """Should pair vectors by their index, not arrival order."""
        mock_openai.embeddings.create.side_effect = (
            lambda model, input, encoding_format: embedding_response(input, reverse=True)
        )
        vectors = service.embed_texts(["a", "b"])
        assert vectors == [[0.0] * DIMENSIONS, [1.0] * DIMENSIONS]

    def test_count_mismatch_is_malformed(self, service, mock_openai):
        """Should reject a response with fewer vectors than inputs."""
        mock_openai.embeddings.create.side_effect = (
            lambda model, input, encoding_format: embedding_response(input[:-1])
        )
        with pytest.raises(MalformedResponseError):
            service.embed_texts(["a", "b"])

    def test_dimension_mismatch_is_malformed(self, service, mock_openai):
        """Should reject vectors of the wrong length."""
        mock_openai.embeddings.create.side_effect = (
            lambda model, input, encoding_format: embedding_response(input, dimensions=2)
        )
        with pytest.raises(MalformedResponseError):
            service.embed_texts(["a"])

    def test_retries_then_succeeds(self, service, mock_openai):
        """Should recover from a transient failure within the retry budget."""
        good = embedding_response(["a", "b"])
        mock_openai.embeddings.create.side_effect = [
            MalformedResponseError("short response"),
            good,
        ]
        results = service.generate_embeddings([make_topic(1), make_topic(2)])
        assert len(results) == 2
        assert mock_openai.embeddings.create.call_count == 2

    def test_exhausted_retries_raise_embedding_error(self, service, mock_openai):
        """Should fail the window when a sub-batch never succeeds."""
        mock_openai.embeddings.create.side_effect = (
            lambda model, input, encoding_format: SimpleNamespace(data=[])
        )
        with pytest.raises(EmbeddingError) as exc_info:
            service.generate_embeddings([make_topic(1)])
        assert exc_info.value.topic_ids == ["t0001"]
        assert mock_openai.embeddings.create.call_count == 3

    def test_reports_progress(self, service):
        """Should report cumulative topics embedded."""
        on_progress = MagicMock()
        service.generate_embeddings([make_topic(n) for n in range(1, 4)], on_progress=on_progress)
        assert on_progress.call_args_list[-1].args == (3, 3)

    def test_empty_input_makes_no_calls(self, service, mock_openai):
        """Should not call the API for an empty window."""
        assert service.generate_embeddings([]) == []
        mock_openai.embeddings.create.assert_not_called()

    def test_out_of_order_batches_keep_input_order(self, service, mock_openai):
        """Should map results back by batch position when a later batch finishes first."""
        later_batch_done = threading.Event()
        finished = []

        def create(model, input, encoding_format):
            if any("Topic 1" in text for text in input):
                assert later_batch_done.wait(timeout=5)
                finished.append("first")
                marker = 1.0
            else:
                finished.append("second")
                later_batch_done.set()
                marker = 3.0
            return SimpleNamespace(data=[
                SimpleNamespace(index=i, embedding=[marker] * DIMENSIONS) for i in range(len(input))
            ])

        mock_openai.embeddings.create.side_effect = create

        results = service.generate_embeddings([make_topic(n) for n in range(1, 4)])

        assert finished == ["second", "first"]
        assert [r.topic_id for r in results] == ["t0001", "t0002", "t0003"]
        assert [r.embedding[0] for r in results] == [1.0, 1.0, 3.0]

    def test_stop_event_skips_unstarted_batches(self, service, mock_openai):
        """Should make no calls and return nothing once asked to stop."""
        stop = threading.Event()
        stop.set()

        assert service.generate_embeddings([make_topic(n) for n in range(1, 6)], stop_event=stop) == []
        mock_openai.embeddings.create.assert_not_called()


class TestSummaryGenerator:
    """Tests for SummaryGenerator."""

    def test_preserves_order(self, topics, llm_config):
        """Should return one summary per topic, in input order."""
        generator = SummaryGenerator(FakeCompletionClient(), config=llm_config)

        results = generator.generate_summaries(topics)

        assert [r.topic_id for r in results] == [t.topic_id for t in topics]
        assert all(r.difficulty_band is DifficultyBand.CORE for r in results)
        assert not any(r.is_fallback for r in results)

    def test_failure_yields_fallback(self, topics, llm_config):
        """Should substitute a well-formed fallback for a failing topic only."""
        client = FakeCompletionClient(failing_ids={"t0002"})
        generator = SummaryGenerator(client, config=llm_config, retry_policy=RetryPolicy(max_attempts=3))

        results = generator.generate_summaries(topics)

        assert [r.is_fallback for r in results] == [False, True, False]
        fallback = results[1]
        assert fallback.reasoning == FALLBACK_REASONING
        assert fallback.difficulty_band in set(DifficultyBand)
        assert 0.0 <= fallback.exam_importance <= 1.0
        assert client.calls.count("t0002") == 3

    def test_malformed_response_is_not_retried(self, llm_config):
        """Should fall back immediately on an unparseable response."""
        client = FakeCompletionClient(
            failing_ids={"t0001"},
            error=MalformedResponseError("not json", provider="openai"),
        )
        generator = SummaryGenerator(client, config=llm_config)

        result = generator.summarize(make_topic(1))

        assert result.is_fallback
        assert client.calls == ["t0001"]

    def test_rejected_request_falls_back(self, llm_config):
        """Should fall back on a non-retryable API rejection."""
        client = FakeCompletionClient(failing_ids={"t0001"}, error=ApiError("bad request"))
        result = SummaryGenerator(client, config=llm_config).summarize(make_topic(1))
        assert result.summary == "Study topic: Topic 1. Part of Biology curriculum."

    def test_out_of_order_completion_keeps_input_order(self, topics):
        """Should place each summary at its topic's position when calls finish out of order."""
        last_replied = threading.Event()

        def before_reply(topic_id):
            if topic_id == "t0001":
                assert last_replied.wait(timeout=5)
            elif topic_id == "t0003":
                last_replied.set()

        client = FakeCompletionClient(before_reply=before_reply)
        generator = SummaryGenerator(client, config=LLMConfig(max_concurrency=3))

        results = generator.generate_summaries(topics)

        assert client.replied.index("t0003") < client.replied.index("t0001")
        assert [r.topic_id for r in results] == ["t0001", "t0002", "t0003"]
        assert [r.summary for r in results] == [f"Summary of {t.topic_id}." for t in topics]

    def test_rejected_credentials_are_not_masked(self, llm_config):
        """Should raise instead of writing a fallback when the provider rejects the key or model."""
        client = FakeCompletionClient(
            failing_ids={"t0001"},
            error=FatalApiError("invalid api key", provider="openai", status_code=401),
        )
        generator = SummaryGenerator(client, config=llm_config, retry_policy=RetryPolicy(max_attempts=3))

        with pytest.raises(FatalApiError):
            generator.summarize(make_topic(1))
        assert client.calls == ["t0001"]

    def test_fatal_error_stops_remaining_topics(self):
        """Should cancel queued topics and propagate the fatal error."""
        topics = [make_topic(n) for n in range(1, 21)]
        client = FakeCompletionClient(
            failing_ids={t.topic_id for t in topics},
            error=FatalApiError("model not found", provider="openai", status_code=404),
        )
        generator = SummaryGenerator(client, config=LLMConfig(max_concurrency=1))

        with pytest.raises(FatalApiError):
            generator.generate_summaries(topics)
        assert len(client.calls) < len(topics)

    def test_stop_event_returns_nothing(self, topics, llm_config):
        """Should skip every topic once asked to stop."""
        stop = threading.Event()
        stop.set()
        client = FakeCompletionClient()

        assert SummaryGenerator(client, config=llm_config).generate_summaries(topics, stop_event=stop) == []
        assert client.calls == []
