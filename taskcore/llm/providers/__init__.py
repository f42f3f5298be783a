"""Built-in model backend providers."""

from taskcore.llm.providers.openai_compatible import (
    OpenAICompatibleBackend,
    OpenAICompatibleProvider,
)

__all__ = ["OpenAICompatibleBackend", "OpenAICompatibleProvider"]
