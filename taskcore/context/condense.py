"""Summarise the middle of a conversation through the model backend."""

import logging
from dataclasses import dataclass, field

from taskcore.context.history import normalize_history
from taskcore.llm.protocol import ModelBackend, TextChunk, UsageChunk
from taskcore.messages import ModelMessage, TextBlock

logger = logging.getLogger(__name__)

N_MESSAGES_TO_KEEP = 3

SUMMARY_PROMPT = """\
You are a helpful assistant that summarizes conversations between a user and an \
AI coding assistant. The summary must let the assistant continue the work without \
the original messages.

Cover, in order:
1. Previous Conversation: the high-level flow of the whole conversation.
2. Current Work: what was being worked on right before this summary request.
3. Key Technical Concepts: technologies, conventions and frameworks discussed.
4. Relevant Files and Code: files examined, modified or created, with the important snippets.
5. Problem Solving: problems solved and any troubleshooting still in progress.
6. Pending Tasks and Next Steps: outstanding work and the next step, quoting the \
most recent instructions verbatim where useful.

Output only the summary."""

SUMMARY_REQUEST = "Summarize the conversation so far, as described in the system prompt."


@dataclass
class SummarizeResponse:
    messages: list[ModelMessage]
    summary: str = ""
    cost: float = 0.0
    new_context_tokens: int | None = None
    error: str | None = None


@dataclass
class _SummaryStream:
    parts: list[str] = field(default_factory=list)
    text: str = ""
    output_tokens: int = 0
    cost: float = 0.0
    usage_seen: bool = False


def _tail_start(messages: list[ModelMessage]) -> int:
    """Index where the kept tail starts: the last N messages, moved back to a user turn."""
    start = max(1, len(messages) - N_MESSAGES_TO_KEEP)
    while start > 1 and messages[start].role != "user":
        start -= 1
    return start


async def _collect(backend: ModelBackend, request: list[ModelMessage], task_id: str) -> _SummaryStream:
    out = _SummaryStream()
    async for chunk in backend.create_message(
        SUMMARY_PROMPT, request, {"task_id": task_id, "purpose": "condense"}
    ):
        if isinstance(chunk, TextChunk):
            out.parts.append(chunk.text)
        elif isinstance(chunk, UsageChunk):
            out.usage_seen = True
            out.output_tokens = chunk.output_tokens
            out.cost = chunk.total_cost or 0.0
    out.text = "".join(out.parts).strip()
    return out


async def summarize_conversation(
    messages: list[ModelMessage],
    backend: ModelBackend,
    system_prompt: str,
    task_id: str,
    prev_context_tokens: int,
) -> SummarizeResponse:
    """Replace the span between the first message and the recent tail with one summary.

    Never raises: every refusal or backend failure comes back as ``error`` with
    the original messages untouched.
    """
    start = _tail_start(messages)
    span = messages[1:start]
    if len(span) <= 1:
        return SummarizeResponse(messages=messages, error="Not enough messages to condense")
    tail = messages[start:]
    if any(m.is_summary for m in tail):
        return SummarizeResponse(messages=messages, error="Context was condensed recently")

    request = normalize_history(
        [messages[0], *span, ModelMessage(role="user", content=[TextBlock(text=SUMMARY_REQUEST)])]
    )
    try:
        stream = await _collect(backend, request, task_id)
    except Exception as e:
        logger.warning("condensation request failed for task %s: %s", task_id, e)
        return SummarizeResponse(messages=messages, error=f"Condensation failed: {e}")
    if not stream.text:
        return SummarizeResponse(
            messages=messages, cost=stream.cost, error="Condensation produced an empty summary"
        )

    summary_message = ModelMessage(
        role="assistant",
        content=[TextBlock(text=stream.text)],
        ts=tail[0].ts if tail else None,
        is_summary=True,
    )
    new_messages = normalize_history([messages[0], summary_message, *tail])

    output_tokens = stream.output_tokens
    if not stream.usage_seen:
        output_tokens = await backend.count_tokens([TextBlock(text=stream.text)])
    context_blocks: list = [TextBlock(text=system_prompt)]
    for message in tail:
        context_blocks.extend(message.content)
    new_context_tokens = output_tokens + await backend.count_tokens(context_blocks)
    if new_context_tokens >= prev_context_tokens:
        return SummarizeResponse(
            messages=messages,
            cost=stream.cost,
            error="Condensing did not reduce the context size",
        )
    logger.info(
        "task %s condensed %d messages: %d -> %d tokens",
        task_id,
        len(span),
        prev_context_tokens,
        new_context_tokens,
    )
    return SummarizeResponse(
        messages=new_messages,
        summary=stream.text,
        cost=stream.cost,
        new_context_tokens=new_context_tokens,
    )
