from replyflow.services.llm.anthropic_provider import AnthropicProvider
from replyflow.services.llm.base import LLMProvider, LLMResponse, ProviderError
from replyflow.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMProvider", "LLMResponse", "ProviderError", "OpenAIProvider", "AnthropicProvider"]
