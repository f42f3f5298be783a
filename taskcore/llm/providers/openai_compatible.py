"""OpenAI and OpenAI-compatible backends (OpenAI, OpenRouter, LM Studio, etc.). Chat Completions streaming."""

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from openai import AsyncOpenAI

from taskcore.context.tokens import estimate_content_tokens
from taskcore.llm.protocol import (
    ApiStreamChunk,
    ModelConfig,
    ModelLimits,
    ProviderConfig,
    ReasoningChunk,
    TextChunk,
    UsageChunk,
)
from taskcore.messages import ContentBlock, ModelMessage

logger = logging.getLogger(__name__)


def _tool_use_as_text(name: str, params: dict[str, Any]) -> str:
    inner = "\n".join(f"<{k}>\n{v}\n</{k}>" for k, v in params.items())
    return f"<{name}>\n{inner}\n</{name}>"


def _content_parts(content: list[ContentBlock]) -> list[dict[str, Any]]:
    """Flatten engine content blocks into chat-completions content parts."""
    parts: list[dict[str, Any]] = []
    for block in content:
        if block.type == "text":
            parts.append({"type": "text", "text": block.text})
        elif block.type == "image":
            url = f"data:{block.source.media_type};base64,{block.source.data}"
            parts.append({"type": "image_url", "image_url": {"url": url}})
        elif block.type == "tool_use":
            parts.append({"type": "text", "text": _tool_use_as_text(block.name, block.input)})
        elif block.type == "tool_result":
            if isinstance(block.content, str):
                parts.append({"type": "text", "text": f"[Tool Result]\n\n{block.content}"})
            else:
                parts.append({"type": "text", "text": "[Tool Result]"})
                parts.extend(_content_parts(list(block.content)))
    return parts


def to_openai_messages(system_prompt: str, messages: list[ModelMessage]) -> list[dict[str, Any]]:
    """Convert engine history to the chat-completions message list."""
    result: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for message in messages:
        parts = _content_parts(message.content)
        if message.role == "assistant":
            text = "\n\n".join(p["text"] for p in parts if p["type"] == "text")
            result.append({"role": "assistant", "content": text})
        else:
            result.append({"role": "user", "content": parts})
    return result


class OpenAICompatibleBackend:
    """ModelBackend over AsyncOpenAI chat.completions with stream=True."""

    def __init__(self, client: AsyncOpenAI, model: ModelConfig) -> None:
        self._client = client
        self._model = model

    async def create_message(
        self,
        system_prompt: str,
        messages: list[ModelMessage],
        metadata: dict[str, Any] | None = None,
    ) -> AsyncIterator[ApiStreamChunk]:
        kwargs: dict[str, Any] = {
            "model": self._model.model,
            "messages": to_openai_messages(system_prompt, messages),
            "temperature": self._model.temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if self._model.max_tokens:
            kwargs["max_tokens"] = self._model.max_tokens
        if metadata and metadata.get("task_id"):
            kwargs["user"] = str(metadata["task_id"])
        kwargs.update(self._model.extra)
        stream = await self._client.chat.completions.create(**kwargs)
        async for chunk in stream:
            if chunk.choices:
                delta = chunk.choices[0].delta
                reasoning = getattr(delta, "reasoning_content", None) or getattr(
                    delta, "reasoning", None
                )
                if reasoning:
                    yield ReasoningChunk(text=reasoning)
                if delta.content:
                    yield TextChunk(text=delta.content)
            usage = getattr(chunk, "usage", None)
            if usage is not None:
                details = getattr(usage, "prompt_tokens_details", None)
                cached = getattr(details, "cached_tokens", None) if details else None
                yield UsageChunk(
                    input_tokens=usage.prompt_tokens or 0,
                    output_tokens=usage.completion_tokens or 0,
                    cache_read_tokens=cached,
                )

    def get_model_limits(self) -> ModelLimits:
        return ModelLimits(
            context_window=self._model.context_window,
            max_tokens=self._model.max_tokens,
            supports_images=self._model.supports_images,
            thinking=self._model.thinking,
        )

    async def count_tokens(self, content: list[ContentBlock]) -> int:
        return estimate_content_tokens(content)


class OpenAICompatibleProvider:
    """Builds OpenAICompatibleBackend instances from provider config."""

    provider_type = "openai_compatible"

    def build(
        self,
        config: ProviderConfig,
        model: ModelConfig,
        api_key: str | None,
    ) -> OpenAICompatibleBackend:
        client = AsyncOpenAI(
            base_url=config.base_url,
            api_key=api_key or "not-required",
            default_headers=config.default_headers or None,
            timeout=60.0,
        )
        logger.debug(
            "openai_compatible backend: provider=%s model=%s extra=%s",
            config.id,
            model.model,
            json.dumps(model.extra, ensure_ascii=False),
        )
        return OpenAICompatibleBackend(client, model)
