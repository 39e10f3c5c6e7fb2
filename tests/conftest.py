"""Pytest configuration and fixtures."""

import json
import logging
import os
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

# Keep a developer's real credentials and overrides out of the test run
for _key in list(os.environ):
    if _key.startswith("TMG_") or _key == "TOPIC_AI_UPSERT_CHUNK_SIZE":
        del os.environ[_key]

from topic_metadata.config import EmbeddingConfig, LLMConfig
from topic_metadata.core import SQLiteTopicStore
from topic_metadata.exceptions import TransientApiError
from topic_metadata.llm import TopicSummaryResponse
from topic_metadata.models import Topic

DIMENSIONS = 3


def make_topic(n: int, **overrides) -> Topic:
    """Build a deterministic topic; ids sort in creation order."""
    values = {
        "topic_id": f"t{n:04d}",
        "topic_name": f"Topic {n}",
        "subject_name": "Biology",
        "exam_board": "AQA",
        "qualification_level": "GCSE",
        "topic_code": f"4.{n}",
        "topic_level": 2,
        "full_path": ("Cell biology", f"Topic {n}"),
    }
    values.update(overrides)
    return Topic(**values)


def embedding_response(texts, dimensions=DIMENSIONS, reverse=False):
    """Fake openai embeddings response, optionally returned out of order."""
    data = [
        SimpleNamespace(index=i, embedding=[float(i)] * dimensions)
        for i in range(len(texts))
    ]
    if reverse:
        data.reverse()
    return SimpleNamespace(data=data)


class FakeCompletionClient:
    """complete_json stand-in keyed on the topic id inside the prompt."""

    def __init__(self, failing_ids=(), error=None, delay=0.0, before_reply=None):
        self.failing_ids = set(failing_ids)
        self.error = error or TransientApiError("upstream timeout", provider="openai")
        self.delay = delay
        self.before_reply = before_reply
        self.calls = []
        self.replied = []
        self._lock = threading.Lock()

    def complete_json(self, prompt, response_model, system=None, max_tokens=None):
        topic_id = json.loads(prompt)["topic"]["id"]
        with self._lock:
            self.calls.append(topic_id)
        if self.delay:
            # time.sleep is patched out for every test
            threading.Event().wait(self.delay)
        if self.before_reply:
            self.before_reply(topic_id)
        if topic_id in self.failing_ids:
            raise self.error
        with self._lock:
            self.replied.append(topic_id)
        return TopicSummaryResponse(
            topic_id=topic_id,
            summary=f"Summary of {topic_id}.",
            difficulty_band="core",
            exam_importance=0.8,
            reasoning="Foundational topic.",
        )


@pytest.fixture(autouse=True)
def no_sleep():
    """Backoff never actually waits in tests."""
    with patch("topic_metadata.retry.time.sleep") as mock_sleep:
        yield mock_sleep


@pytest.fixture(autouse=True)
def package_logger_propagates():
    """Undo setup_logging so caplog sees package records in every test."""
    logger = logging.getLogger("topic_metadata")
    yield
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def topics():
    return [make_topic(n) for n in range(1, 4)]


@pytest.fixture
def embedding_config():
    return EmbeddingConfig(dimensions=DIMENSIONS, batch_size=2, max_concurrency=2)


@pytest.fixture
def llm_config():
    return LLMConfig(max_concurrency=2)


@pytest.fixture
def mock_openai():
    """Mock OpenAI SDK client whose embeddings mirror the request."""
    client = MagicMock()
    client.embeddings.create.side_effect = lambda model, input, encoding_format: embedding_response(input)
    return client


@pytest.fixture
def sqlite_store():
    store = SQLiteTopicStore(":memory:")
    yield store
    store.close()
