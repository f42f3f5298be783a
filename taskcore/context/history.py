"""Structural repairs on the model-facing history."""

from taskcore.messages import (
    ContentBlock,
    ModelMessage,
    TextBlock,
    ToolResultBlock,
)

INTERRUPTED_TOOL_RESULT = "Task was interrupted before this tool call could be completed."
IMAGE_PLACEHOLDER = "[Referenced image in conversation]"


def merge_consecutive_roles(messages: list[ModelMessage]) -> list[ModelMessage]:
    """Join adjacent messages of the same role so roles alternate."""
    merged: list[ModelMessage] = []
    for message in messages:
        if merged and merged[-1].role == message.role:
            prev = merged[-1]
            merged[-1] = prev.model_copy(
                update={
                    "content": [*prev.content, *message.content],
                    "is_summary": prev.is_summary or message.is_summary,
                }
            )
        else:
            merged.append(message)
    return merged


def _result_text(block: ToolResultBlock) -> str:
    if isinstance(block.content, str):
        return block.content
    return "\n".join(b.text for b in block.content if b.type == "text")


def _tool_use_ids(message: ModelMessage | None) -> list[str]:
    if message is None or message.role != "assistant":
        return []
    return [b.id for b in message.content if b.type == "tool_use"]


def _interrupted_results(ids: list[str]) -> list[ContentBlock]:
    return [ToolResultBlock(tool_use_id=i, content=INTERRUPTED_TOOL_RESULT) for i in ids]


def repair_tool_pairing(messages: list[ModelMessage]) -> list[ModelMessage]:
    """Give every legacy tool use a result in the next user message.

    Missing results are synthesised as interrupted; results with no matching
    tool use in the preceding assistant message are turned into plain text.
    """
    pending = list(messages)
    repaired: list[ModelMessage] = []
    i = 0
    while i < len(pending):
        message = pending[i]
        if message.role == "user":
            known = set(_tool_use_ids(repaired[-1] if repaired else None))
            content: list[ContentBlock] = []
            changed = False
            for block in message.content:
                if block.type == "tool_result" and block.tool_use_id not in known:
                    content.append(TextBlock(text=f"[Tool Result]\n\n{_result_text(block)}"))
                    changed = True
                else:
                    content.append(block)
            repaired.append(message.model_copy(update={"content": content}) if changed else message)
            i += 1
            continue
        repaired.append(message)
        use_ids = _tool_use_ids(message)
        if use_ids:
            nxt = pending[i + 1] if i + 1 < len(pending) else None
            if nxt is not None and nxt.role == "user":
                answered = {b.tool_use_id for b in nxt.content if b.type == "tool_result"}
                missing = [u for u in use_ids if u not in answered]
                if missing:
                    pending[i + 1] = nxt.model_copy(
                        update={"content": [*_interrupted_results(missing), *nxt.content]}
                    )
            else:
                pending.insert(
                    i + 1, ModelMessage(role="user", content=_interrupted_results(use_ids))
                )
        i += 1
    return repaired


def normalize_history(messages: list[ModelMessage]) -> list[ModelMessage]:
    """Role alternation plus tool pairing, applied after every structural edit."""
    return repair_tool_pairing(merge_consecutive_roles(messages))


def strip_images(messages: list[ModelMessage]) -> list[ModelMessage]:
    """Replace image blocks with a text placeholder for text-only models."""
    result: list[ModelMessage] = []
    for message in messages:
        if not any(b.type == "image" for b in message.content):
            result.append(message)
            continue
        content = [
            TextBlock(text=IMAGE_PLACEHOLDER) if b.type == "image" else b for b in message.content
        ]
        result.append(message.model_copy(update={"content": content}))
    return result
