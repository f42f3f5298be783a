"""Split streamed assistant text into text blocks and tag-style action requests.

An action is written as ``<tool_name><param>value</param>...</tool_name>``.
Only names the action executor knows are treated as actions.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, Literal, Protocol, Union, runtime_checkable

_PARAM_RE = re.compile(r"<([A-Za-z_][\w]*)>(.*?)</\1>", re.DOTALL)
_OPEN_PARAM_RE = re.compile(r"<([A-Za-z_][\w]*)>((?:(?!</?\1>).)*)$", re.DOTALL)
_DANGLING_TAG_RE = re.compile(r"<\/?[\w]*$")
_THINKING_RE = re.compile(r"</?thinking>\s?")


@dataclass
class TextContent:
    content: str
    partial: bool
    type: Literal["text"] = "text"


@dataclass
class ToolUse:
    name: str
    partial: bool
    params: dict[str, str] = field(default_factory=dict)
    # Offset in the source text just past this block.
    end: int = 0
    type: Literal["tool_use"] = "tool_use"


AssistantBlock = Union[TextContent, ToolUse]


@runtime_checkable
class AssistantMessageParser(Protocol):
    def parse(self, text: str) -> list[AssistantBlock]: ...


def _clean_text(text: str, partial: bool) -> str:
    text = _THINKING_RE.sub("", text)
    if partial:
        text = _DANGLING_TAG_RE.sub("", text)
    return text.strip()


def _params(body: str, partial: bool) -> dict[str, str]:
    params = {m.group(1): m.group(2).strip("\n") for m in _PARAM_RE.finditer(body)}
    if partial:
        last_close = 0
        for m in _PARAM_RE.finditer(body):
            last_close = m.end()
        open_match = _OPEN_PARAM_RE.search(body, last_close)
        if open_match and open_match.group(1) not in params:
            params[open_match.group(1)] = open_match.group(2).strip("\n")
    return params


class TagActionParser:
    """Default parser for tag-style action requests."""

    def __init__(self, tool_names: Iterable[str]) -> None:
        names = sorted(set(tool_names), key=len, reverse=True)
        self._open_re = (
            re.compile("<(" + "|".join(re.escape(n) for n in names) + ")>") if names else None
        )

    def parse(self, text: str) -> list[AssistantBlock]:
        blocks: list[AssistantBlock] = []
        pos = 0
        while pos < len(text):
            match = self._open_re.search(text, pos) if self._open_re else None
            if match is None:
                tail = _clean_text(text[pos:], partial=True)
                if tail:
                    blocks.append(TextContent(content=tail, partial=True))
                break
            before = _clean_text(text[pos : match.start()], partial=False)
            if before:
                blocks.append(TextContent(content=before, partial=False))
            name = match.group(1)
            close = f"</{name}>"
            close_at = text.find(close, match.end())
            if close_at == -1:
                blocks.append(
                    ToolUse(
                        name=name,
                        partial=True,
                        params=_params(text[match.end() :], partial=True),
                        end=len(text),
                    )
                )
                break
            blocks.append(
                ToolUse(
                    name=name,
                    partial=False,
                    params=_params(text[match.end() : close_at], partial=False),
                    end=close_at + len(close),
                )
            )
            pos = close_at + len(close)
        return blocks
