"""Token estimates for content blocks when the backend has no tokenizer."""

import math

from taskcore.messages import ContentBlock

CHARS_PER_TOKEN = 4


def estimate_text_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN) if text else 0


def estimate_content_tokens(content: list[ContentBlock]) -> int:
    """Rough token count: chars/4 for text, sqrt-of-payload for images."""
    total = 0
    for block in content:
        if block.type == "text":
            total += estimate_text_tokens(block.text)
        elif block.type == "image":
            total += math.ceil(math.sqrt(len(block.source.data)) * 1.5)
        elif block.type == "tool_use":
            total += estimate_text_tokens(block.name + str(block.input))
        elif block.type == "tool_result":
            if isinstance(block.content, str):
                total += estimate_text_tokens(block.content)
            else:
                total += estimate_content_tokens(list(block.content))
    return total
