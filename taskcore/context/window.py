"""Keep the model-facing history within the model's context window."""

import logging
from dataclasses import dataclass

from taskcore.context.condense import summarize_conversation
from taskcore.context.history import normalize_history
from taskcore.llm.protocol import ModelBackend, ModelLimits
from taskcore.messages import ModelMessage

logger = logging.getLogger(__name__)

# Share of the window kept free as a safety margin.
TOKEN_BUFFER_PERCENTAGE = 0.1
# Share of the window reserved for output when the model declares no max_tokens.
DEFAULT_OUTPUT_RESERVE = 0.2
# Output reserve for thinking models when no model_max_tokens is configured.
DEFAULT_THINKING_MODEL_MAX_TOKENS = 16_384


@dataclass
class TruncateResult:
    messages: list[ModelMessage]
    summary: str = ""
    cost: float = 0.0
    prev_context_tokens: int = 0
    new_context_tokens: int | None = None
    error: str | None = None


def output_reserve(limits: ModelLimits, model_max_tokens: int | None = None) -> int:
    """Tokens kept free for the response.

    Thinking models reserve the configured ``model_max_tokens`` (or a 16k
    default); other models reserve their own ``max_tokens``.
    """
    if limits.thinking:
        return model_max_tokens or DEFAULT_THINKING_MODEL_MAX_TOKENS
    return limits.max_tokens or int(limits.context_window * DEFAULT_OUTPUT_RESERVE)


def allowed_tokens(limits: ModelLimits, model_max_tokens: int | None = None) -> int:
    """Context budget: window minus safety buffer minus output reserve."""
    reserved = output_reserve(limits, model_max_tokens)
    return int(limits.context_window * (1 - TOKEN_BUFFER_PERCENTAGE) - reserved)


def _last_user_index(messages: list[ModelMessage]) -> int:
    for index in range(len(messages) - 1, -1, -1):
        if messages[index].role == "user":
            return index
    return -1


class ContextWindowManager:
    """Condenses or truncates history before each request when it no longer fits."""

    def __init__(
        self,
        backend: ModelBackend,
        auto_condense: bool = False,
        auto_condense_percent: float = 100,
        model_max_tokens: int | None = None,
    ) -> None:
        self._backend = backend
        self._auto_condense = auto_condense
        self._auto_condense_percent = auto_condense_percent
        self._model_max_tokens = model_max_tokens

    async def context_size(self, messages: list[ModelMessage], total_tokens: int) -> int:
        """Last reported request size plus the pending user message, if any."""
        last = messages[-1] if messages else None
        if last is None or last.role != "user":
            return total_tokens
        return total_tokens + await self._backend.count_tokens(last.content)

    async def fit(
        self,
        messages: list[ModelMessage],
        total_tokens: int,
        system_prompt: str,
        task_id: str,
    ) -> TruncateResult:
        limits = self._backend.get_model_limits()
        prev = await self.context_size(messages, total_tokens)
        allowed = allowed_tokens(limits, self._model_max_tokens)
        error: str | None = None
        cost = 0.0

        if self._auto_condense:
            percent = 100 * prev / limits.context_window if limits.context_window else 0
            if percent >= self._auto_condense_percent or prev > allowed:
                condensed = await summarize_conversation(
                    messages, self._backend, system_prompt, task_id, prev
                )
                if condensed.error is None:
                    return TruncateResult(
                        messages=condensed.messages,
                        summary=condensed.summary,
                        cost=condensed.cost,
                        prev_context_tokens=prev,
                        new_context_tokens=condensed.new_context_tokens,
                    )
                error = condensed.error
                cost = condensed.cost
                logger.info("task %s: condensation skipped (%s)", task_id, error)

        if prev > allowed:
            truncated = await self.truncate(messages, prev, allowed)
            logger.info(
                "task %s: truncated history %d -> %d messages",
                task_id,
                len(messages),
                len(truncated),
            )
            return TruncateResult(
                messages=truncated, cost=cost, prev_context_tokens=prev, error=error
            )
        return TruncateResult(messages=messages, cost=cost, prev_context_tokens=prev, error=error)

    async def condense(
        self,
        messages: list[ModelMessage],
        total_tokens: int,
        system_prompt: str,
        task_id: str,
    ) -> TruncateResult:
        """Condense regardless of thresholds."""
        prev = await self.context_size(messages, total_tokens)
        condensed = await summarize_conversation(
            messages, self._backend, system_prompt, task_id, prev
        )
        return TruncateResult(
            messages=condensed.messages,
            summary=condensed.summary,
            cost=condensed.cost,
            prev_context_tokens=prev,
            new_context_tokens=condensed.new_context_tokens,
            error=condensed.error,
        )

    async def truncate(
        self, messages: list[ModelMessage], estimate: int, allowed: int
    ) -> list[ModelMessage]:
        """Drop (assistant, user) turn pairs after the first message, oldest first.

        The first message (the task) and the last user turn always survive.
        """
        working = normalize_history(messages)
        while estimate > allowed and _last_user_index(working) > 2:
            first, second = working[1], working[2]
            if first.role != "assistant" or second.role != "user":
                break
            estimate -= await self._backend.count_tokens(first.content)
            estimate -= await self._backend.count_tokens(second.content)
            working = [working[0], *working[3:]]
        return normalize_history(working)
