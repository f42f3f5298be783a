"""Model backend layer: protocol, router, providers."""

from taskcore.llm.protocol import (
    ApiStreamChunk,
    ModelBackend,
    ModelConfig,
    ModelLimits,
    ProviderConfig,
    ReasoningChunk,
    TextChunk,
    UsageChunk,
)
from taskcore.llm.router import ModelRouter

__all__ = [
    "ApiStreamChunk",
    "ModelBackend",
    "ModelConfig",
    "ModelLimits",
    "ModelRouter",
    "ProviderConfig",
    "ReasoningChunk",
    "TextChunk",
    "UsageChunk",
]
