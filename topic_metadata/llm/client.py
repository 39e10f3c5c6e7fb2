"""Completion API clients with structured output support.

Both clients expose the same ``complete`` / ``complete_json`` surface and
translate SDK exceptions into the pipeline's error taxonomy:
TransientApiError (retryable), RateLimitError, FatalApiError (bad key,
permissions or model), MalformedResponseError, ApiError.
"""

import json
from typing import Optional, Type, TypeVar

import anthropic
import openai
from anthropic import Anthropic
from openai import OpenAI
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..config import Config, LLMConfig
from ..exceptions import ApiError, FatalApiError, MalformedResponseError, RateLimitError, TransientApiError

T = TypeVar('T', bound=BaseModel)


def _retry_after(error) -> Optional[float]:
    """Read a Retry-After header from an SDK status error, if present."""
    response = getattr(error, 'response', None)
    if response is None:
        return None
    value = response.headers.get('retry-after')
    try:
        return float(value) if value else None
    except ValueError:
        return None


def translate_openai_error(error: Exception) -> ApiError:
    """Map an openai SDK exception onto the pipeline taxonomy."""
    if isinstance(error, openai.RateLimitError):
        return RateLimitError(provider='openai', retry_after=_retry_after(error), message=str(error))
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError, openai.NotFoundError)):
        return FatalApiError(f"OpenAI rejected the request: {error}", provider='openai',
                             status_code=error.status_code)
    if isinstance(error, (openai.APITimeoutError, openai.APIConnectionError)):
        return TransientApiError(f"OpenAI request failed: {error}", provider='openai')
    if isinstance(error, openai.APIStatusError) and error.status_code >= 500:
        return TransientApiError(f"OpenAI server error {error.status_code}: {error}", provider='openai')
    return ApiError(f"OpenAI request rejected: {error}", provider='openai')


def translate_anthropic_error(error: Exception) -> ApiError:
    """Map an anthropic SDK exception onto the pipeline taxonomy."""
    if isinstance(error, anthropic.RateLimitError):
        return RateLimitError(provider='anthropic', retry_after=_retry_after(error), message=str(error))
    if isinstance(error, (anthropic.AuthenticationError, anthropic.PermissionDeniedError, anthropic.NotFoundError)):
        return FatalApiError(f"Anthropic rejected the request: {error}", provider='anthropic',
                             status_code=error.status_code)
    if isinstance(error, (anthropic.APITimeoutError, anthropic.APIConnectionError)):
        return TransientApiError(f"Anthropic request failed: {error}", provider='anthropic')
    if isinstance(error, anthropic.APIStatusError) and error.status_code >= 500:
        return TransientApiError(f"Anthropic server error {error.status_code}: {error}", provider='anthropic')
    return ApiError(f"Anthropic request rejected: {error}", provider='anthropic')


def _strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code block, if any."""
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def parse_json_response(text: Optional[str], response_model: Type[T], provider: str) -> T:
    """Parse and validate a JSON response body.

    Raises:
        MalformedResponseError: If the text is empty, not JSON, or the wrong shape
    """
    if not text:
        raise MalformedResponseError("Empty completion response", provider=provider)
    try:
        data = json.loads(_strip_code_fence(text))
    except json.JSONDecodeError as e:
        raise MalformedResponseError(f"Response is not valid JSON: {e}", provider=provider, raw=text)
    if not isinstance(data, dict):
        raise MalformedResponseError("Response JSON is not an object", provider=provider, raw=text)
    try:
        return response_model.model_validate(data)
    except PydanticValidationError as e:
        raise MalformedResponseError(
            f"Response does not match {response_model.__name__}: {e.error_count()} error(s)",
            provider=provider,
            raw=text,
        )


class OpenAIChatClient:
    """Wrapper for OpenAI chat completions using JSON mode."""

    provider = 'openai'

    def __init__(self, api_key: str, config: Optional[LLMConfig] = None, client: Optional[OpenAI] = None):
        self.config = config or LLMConfig()
        self.client = client or OpenAI(api_key=api_key, timeout=self.config.timeout_seconds, max_retries=0)

    def complete(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """
        Send a JSON-mode completion request.

        Returns:
            The assistant's response text
        """
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        try:
            response = self.client.chat.completions.create(
                model=self.config.model_name,
                messages=messages,
                response_format={"type": "json_object"},
                max_tokens=max_tokens or self.config.max_tokens,
                temperature=temperature if temperature is not None else self.config.temperature,
            )
        except openai.OpenAIError as e:
            raise translate_openai_error(e) from e

        if not response.choices:
            raise MalformedResponseError("Completion returned no choices", provider=self.provider)
        return response.choices[0].message.content or ""

    def complete_json(
        self,
        prompt: str,
        response_model: Type[T],
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> T:
        """
        Get a structured JSON response.

        Args:
            prompt: The user message
            response_model: Pydantic model class for the response
            system: Optional system prompt
            max_tokens: Override default max tokens

        Returns:
            Parsed Pydantic model instance
        """
        text = self.complete(prompt=prompt, system=system, max_tokens=max_tokens)
        return parse_json_response(text, response_model, self.provider)


class ClaudeClient:
    """Wrapper for Claude API with structured output support."""

    provider = 'anthropic'

    def __init__(self, api_key: str, config: Optional[LLMConfig] = None, client: Optional[Anthropic] = None):
        self.config = config or LLMConfig()
        self.client = client or Anthropic(api_key=api_key, timeout=self.config.timeout_seconds, max_retries=0)

    def complete(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """
        Send a completion request to Claude.

        Returns:
            The assistant's response text
        """
        try:
            response = self.client.messages.create(
                model=self.config.model_name,
                max_tokens=max_tokens or self.config.max_tokens,
                temperature=temperature if temperature is not None else self.config.temperature,
                system=system or "",
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.AnthropicError as e:
            raise translate_anthropic_error(e) from e

        if not response.content:
            raise MalformedResponseError("Completion returned no content", provider=self.provider)
        return getattr(response.content[0], 'text', '') or ""

    def complete_json(
        self,
        prompt: str,
        response_model: Type[T],
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> T:
        """
        Get a structured JSON response from Claude.

        Returns:
            Parsed Pydantic model instance
        """
        json_system = system or ""
        json_system += "\n\nYou must respond with valid JSON that matches the requested schema. Do not include any other text, only the JSON object."

        schema_prompt = f"""{prompt}

Respond with a JSON object matching this schema:
{json.dumps(response_model.model_json_schema(), indent=2)}

Return ONLY the JSON object, no other text."""

        text = self.complete(
            prompt=schema_prompt,
            system=json_system,
            max_tokens=max_tokens,
            temperature=0.1,  # Lower temperature for structured output
        )
        return parse_json_response(text, response_model, self.provider)


def create_completion_client(config: Config):
    """Build the completion client selected by ``llm.provider``."""
    if config.llm.provider == 'anthropic':
        return ClaudeClient(api_key=config.anthropic_api_key, config=config.llm)
    return OpenAIChatClient(api_key=config.openai_api_key, config=config.llm)
