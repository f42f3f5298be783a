"""Model backend protocol, stream chunk types and configuration dataclasses."""

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol, Union, runtime_checkable

from taskcore.messages import ContentBlock, ModelMessage


@dataclass
class TextChunk:
    text: str


@dataclass
class ReasoningChunk:
    text: str


@dataclass
class UsageChunk:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int | None = None
    cache_read_tokens: int | None = None
    total_cost: float | None = None


ApiStreamChunk = Union[TextChunk, ReasoningChunk, UsageChunk]


@dataclass(frozen=True)
class ModelLimits:
    """What the engine needs to know about the active model."""

    context_window: int
    max_tokens: int | None = None
    supports_prompt_cache: bool = False
    supports_images: bool = True
    thinking: bool = False


@dataclass
class ModelConfig:
    """Per-agent model configuration (from config/settings.yaml)."""

    provider: str
    model: str
    temperature: float = 0.0
    max_tokens: int | None = None
    context_window: int = 128_000
    supports_images: bool = True
    # Reasoning model; its output reserve comes from context.model_max_tokens.
    thinking: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderConfig:
    """Provider configuration from config/settings.yaml."""

    id: str
    type: str  # openai_compatible
    base_url: str | None = None
    api_key_secret: str | None = None
    api_key_literal: str | None = None
    default_headers: dict[str, str] = field(default_factory=dict)


@runtime_checkable
class ModelBackend(Protocol):
    """Streaming model backend consumed by the engine."""

    def create_message(
        self,
        system_prompt: str,
        messages: list[ModelMessage],
        metadata: dict[str, Any] | None = None,
    ) -> AsyncIterator[ApiStreamChunk]:
        """Start a streamed request. Errors surface while iterating."""
        ...

    def get_model_limits(self) -> ModelLimits: ...

    async def count_tokens(self, content: list[ContentBlock]) -> int: ...


@runtime_checkable
class BackendProvider(Protocol):
    """Builds ModelBackend instances for one provider type."""

    provider_type: str

    def build(
        self,
        config: ProviderConfig,
        model: ModelConfig,
        api_key: str | None,
    ) -> ModelBackend: ...
