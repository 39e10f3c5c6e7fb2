# LLM module - completion clients, response schemas and prompt templates
from .client import (
    ClaudeClient,
    OpenAIChatClient,
    create_completion_client,
    parse_json_response,
    translate_anthropic_error,
    translate_openai_error,
)
from .schemas import TopicSummaryResponse
from .prompts import TOPIC_SUMMARY_SYSTEM, topic_context, topic_summary_prompt

__all__ = [
    'ClaudeClient',
    'OpenAIChatClient',
    'create_completion_client',
    'parse_json_response',
    'translate_anthropic_error',
    'translate_openai_error',
    'TopicSummaryResponse',
    'TOPIC_SUMMARY_SYSTEM',
    'topic_context',
    'topic_summary_prompt',
]
