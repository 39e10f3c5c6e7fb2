"""Tests for completion clients and SDK error translation."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import anthropic
import httpx
import openai
import pytest

from topic_metadata.config import Config, LLMConfig
from topic_metadata.exceptions import (
    ApiError,
    FatalApiError,
    MalformedResponseError,
    RateLimitError,
    TransientApiError,
)
from topic_metadata.llm import (
    ClaudeClient,
    OpenAIChatClient,
    TopicSummaryResponse,
    create_completion_client,
    parse_json_response,
    translate_anthropic_error,
    translate_openai_error,
)

VALID_JSON = '{"summary": "About cells.", "difficulty_band": "core", "exam_importance": 0.9, "reasoning": "Basic."}'


def status_response(status: int, url: str, headers: dict = None) -> httpx.Response:
    return httpx.Response(status, headers=headers or {}, request=httpx.Request("POST", url))


def chat_response(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class TestTranslateOpenAIError:
    """Tests for openai exception mapping."""

    URL = "https://api.openai.com/v1/chat/completions"

    def test_rate_limit_carries_retry_after(self):
        """Should map 429 to RateLimitError with the header value."""
        error = openai.RateLimitError(
            "slow down", response=status_response(429, self.URL, {"retry-after": "3"}), body=None
        )
        translated = translate_openai_error(error)
        assert isinstance(translated, RateLimitError)
        assert translated.retry_after == 3.0

    def test_timeout_is_transient(self):
        """Should treat timeouts like network failures."""
        error = openai.APITimeoutError(request=httpx.Request("POST", self.URL))
        assert isinstance(translate_openai_error(error), TransientApiError)

    def test_server_error_is_transient(self):
        """Should retry 5xx responses."""
        error = openai.InternalServerError("boom", response=status_response(503, self.URL), body=None)
        assert isinstance(translate_openai_error(error), TransientApiError)

    def test_client_error_is_not_transient(self):
        """Should not retry 4xx rejections."""
        error = openai.BadRequestError("bad", response=status_response(400, self.URL), body=None)
        translated = translate_openai_error(error)
        assert type(translated) is ApiError
        assert translated.provider == "openai"

    @pytest.mark.parametrize("error_cls, status", [
        (openai.AuthenticationError, 401),
        (openai.PermissionDeniedError, 403),
        (openai.NotFoundError, 404),
    ])
    def test_rejected_key_or_model_is_fatal(self, error_cls, status):
        """Should map bad credentials, permissions and unknown models to FatalApiError."""
        error = error_cls("rejected", response=status_response(status, self.URL), body=None)
        translated = translate_openai_error(error)
        assert isinstance(translated, FatalApiError)
        assert translated.status_code == status
        assert not isinstance(translated, TransientApiError)


class TestTranslateAnthropicError:
    """Tests for anthropic exception mapping."""

    URL = "https://api.anthropic.com/v1/messages"

    def test_rate_limit(self):
        """Should map 429 to RateLimitError."""
        error = anthropic.RateLimitError("slow down", response=status_response(429, self.URL), body=None)
        assert isinstance(translate_anthropic_error(error), RateLimitError)

    def test_connection_error_is_transient(self):
        """Should retry dropped connections."""
        error = anthropic.APIConnectionError(request=httpx.Request("POST", self.URL))
        assert isinstance(translate_anthropic_error(error), TransientApiError)

    def test_unknown_model_is_fatal(self):
        """Should stop on a model the account cannot use."""
        error = anthropic.NotFoundError("model: gpt-4o-mini", response=status_response(404, self.URL), body=None)
        translated = translate_anthropic_error(error)
        assert isinstance(translated, FatalApiError)
        assert translated.provider == "anthropic"

    def test_invalid_key_is_fatal(self):
        """Should stop on a rejected API key."""
        error = anthropic.AuthenticationError("invalid x-api-key", response=status_response(401, self.URL), body=None)
        assert isinstance(translate_anthropic_error(error), FatalApiError)


class TestParseJsonResponse:
    """Tests for parse_json_response."""

    def test_parses_fenced_json(self):
        """Should strip a markdown code fence before parsing."""
        response = parse_json_response(f"```json\n{VALID_JSON}\n```", TopicSummaryResponse, "anthropic")
        assert response.summary == "About cells."

    @pytest.mark.parametrize("text", ["", "not json", "[1, 2]", '{"summary": "x"}'])
    def test_malformed_responses(self, text):
        """Should raise MalformedResponseError for unusable bodies."""
        with pytest.raises(MalformedResponseError):
            parse_json_response(text, TopicSummaryResponse, "openai")


class TestOpenAIChatClient:
    """Tests for OpenAIChatClient."""

    @pytest.fixture
    def sdk(self):
        return MagicMock()

    @pytest.fixture
    def client(self, sdk):
        return OpenAIChatClient(api_key="sk-test", config=LLMConfig(), client=sdk)

    def test_requests_json_mode(self, client, sdk):
        """Should send system and user messages in JSON mode."""
        sdk.chat.completions.create.return_value = chat_response(VALID_JSON)

        result = client.complete_json("{}", TopicSummaryResponse, system="Be brief.")

        assert result.exam_importance == 0.9
        kwargs = sdk.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["temperature"] == 0.3
        assert kwargs["messages"][0] == {"role": "system", "content": "Be brief."}

    def test_translates_sdk_errors(self, client, sdk):
        """Should raise pipeline errors, not SDK errors."""
        sdk.chat.completions.create.side_effect = openai.APIConnectionError(
            request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        )
        with pytest.raises(TransientApiError):
            client.complete("{}")

    def test_empty_choices(self, client, sdk):
        """Should treat a response with no choices as malformed."""
        sdk.chat.completions.create.return_value = SimpleNamespace(choices=[])
        with pytest.raises(MalformedResponseError):
            client.complete("{}")


class TestClaudeClient:
    """Tests for ClaudeClient."""

    def test_complete_json_adds_schema(self):
        """Should embed the response schema and parse the reply."""
        sdk = MagicMock()
        sdk.messages.create.return_value = SimpleNamespace(content=[SimpleNamespace(text=VALID_JSON)])
        client = ClaudeClient(api_key="key", config=LLMConfig(provider="anthropic"), client=sdk)

        result = client.complete_json("{}", TopicSummaryResponse, system="Be brief.")

        assert result.reasoning == "Basic."
        kwargs = sdk.messages.create.call_args.kwargs
        assert "difficulty_band" in kwargs["messages"][0]["content"]
        assert kwargs["system"].startswith("Be brief.")
        assert kwargs["temperature"] == 0.1
        assert kwargs["model"] == "claude-3-5-haiku-latest"


class TestCreateCompletionClient:
    """Tests for provider selection."""

    def test_selects_provider(self):
        """Should build the client named by llm.provider."""
        config = Config(openai_api_key="sk-test", anthropic_api_key="key")
        assert isinstance(create_completion_client(config), OpenAIChatClient)

        config.llm.provider = "anthropic"
        assert isinstance(create_completion_client(config), ClaudeClient)

    def test_explicit_model_is_used(self):
        """Should send the configured model instead of the provider default."""
        sdk = MagicMock()
        sdk.chat.completions.create.return_value = chat_response(VALID_JSON)
        client = OpenAIChatClient(api_key="sk-test", config=LLMConfig(model="gpt-4o"), client=sdk)

        client.complete("{}")

        assert sdk.chat.completions.create.call_args.kwargs["model"] == "gpt-4o"
