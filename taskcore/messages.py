"""Message and accounting models for the task engine.

Two parallel logs exist per task:

* ``ModelMessage``: role-tagged history sent to the model backend.
* ``DisplayMessage``: the operator-facing transcript of asks and says.

The display message ``ts`` is its identity; it never changes once assigned.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Ask:
    """Ask subtypes (operator must respond)."""

    FOLLOWUP = "followup"
    COMMAND = "command"
    COMMAND_OUTPUT = "command_output"
    TOOL = "tool"
    COMPLETION_RESULT = "completion_result"
    API_REQ_FAILED = "api_req_failed"
    RESUME_TASK = "resume_task"
    RESUME_COMPLETED_TASK = "resume_completed_task"
    MISTAKE_LIMIT_REACHED = "mistake_limit_reached"
    AUTO_APPROVAL_MAX_REQ_REACHED = "auto_approval_max_req_reached"


class Say:
    """Say subtypes (informational, no response expected)."""

    TEXT = "text"
    REASONING = "reasoning"
    ERROR = "error"
    API_REQ_STARTED = "api_req_started"
    API_REQ_RETRIED = "api_req_retried"
    API_REQ_RETRY_DELAYED = "api_req_retry_delayed"
    USER_FEEDBACK = "user_feedback"
    SUBTASK_RESULT = "subtask_result"
    COMPLETION_RESULT = "completion_result"
    CONDENSE_CONTEXT = "condense_context"
    CONDENSE_CONTEXT_ERROR = "condense_context_error"


class AskResponse:
    """Operator responses to an ask."""

    YES = "yes_button_clicked"
    NO = "no_button_clicked"
    MESSAGE = "message_response"


# --- model-facing content blocks ---


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageSource(BaseModel):
    type: Literal["base64"] = "base64"
    media_type: str
    data: str


class ImageBlock(BaseModel):
    type: Literal["image"] = "image"
    source: ImageSource


class ToolUseBlock(BaseModel):
    """Legacy structured tool invocation, kept for persisted histories."""

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """Legacy structured tool result, paired with a ToolUseBlock by id."""

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str | list[TextBlock | ImageBlock] = ""
    is_error: bool | None = None


ContentBlock = Annotated[
    Union[TextBlock, ImageBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]


class ModelMessage(BaseModel):
    """One entry of the model-facing history."""

    role: Literal["user", "assistant"]
    content: list[ContentBlock]
    ts: int | None = None
    is_summary: bool = False

    @field_validator("content", mode="before")
    @classmethod
    def _wrap_plain_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [{"type": "text", "text": value}]
        return value


def image_blocks(images: list[str] | None) -> list[ImageBlock]:
    """Convert data URLs (data:image/png;base64,...) into image blocks."""
    blocks: list[ImageBlock] = []
    for data_url in images or []:
        header, _, data = data_url.partition(",")
        media_type = header.removeprefix("data:").split(";")[0] or "image/png"
        blocks.append(ImageBlock(source=ImageSource(media_type=media_type, data=data)))
    return blocks


# --- display-facing records ---


class ProgressStatus(BaseModel):
    icon: str | None = None
    text: str | None = None


class ContextCondense(BaseModel):
    """Outcome of one condensation, attached to a condense_context say."""

    summary: str
    cost: float = 0.0
    prev_context_tokens: int = 0
    new_context_tokens: int = 0


class DisplayMessage(BaseModel):
    """One operator-facing ask or say."""

    model_config = ConfigDict(validate_assignment=False)

    ts: int = Field(frozen=True)
    type: Literal["ask", "say"]
    ask: str | None = None
    say: str | None = None
    text: str | None = None
    images: list[str] | None = None
    partial: bool | None = None
    progress_status: ProgressStatus | None = None
    checkpoint: dict[str, Any] | None = None
    context_condense: ContextCondense | None = None

    @property
    def subtype(self) -> str | None:
        return self.ask if self.type == "ask" else self.say

    @property
    def key(self) -> tuple[str, str | None]:
        """(kind, subtype) pair used for partial coalescing."""
        return (self.type, self.subtype)


class ApiReqInfo(BaseModel):
    """Payload stored as JSON text on an api_req_started say."""

    request: str | None = None
    tokens_in: int | None = None
    tokens_out: int | None = None
    cache_writes: int | None = None
    cache_reads: int | None = None
    cost: float | None = None
    cancel_reason: Literal["user_cancelled", "streaming_failed"] | None = None
    streaming_failed_message: str | None = None

    def to_text(self) -> str:
        return self.model_dump_json(exclude_none=True)

    @classmethod
    def from_text(cls, text: str | None) -> "ApiReqInfo":
        if not text:
            return cls()
        return cls.model_validate_json(text)


class TokenUsage(BaseModel):
    total_tokens_in: int = 0
    total_tokens_out: int = 0
    total_cache_writes: int | None = None
    total_cache_reads: int | None = None
    total_cost: float = 0.0
    context_tokens: int = 0


class ToolUsageEntry(BaseModel):
    attempts: int = 0
    failures: int = 0


ToolUsage = dict[str, ToolUsageEntry]
