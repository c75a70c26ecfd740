from chatrelay.services.llm.base import LLMError, LLMProvider, LLMResponse
from chatrelay.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMError", "LLMProvider", "LLMResponse", "OpenAIProvider"]
