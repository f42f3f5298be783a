"""Collaborator contracts: what the engine needs from the outside world.

Every external system (persistence, action execution, mention resolution,
presentation, checkpoints, the diff view and the hosting provider) is reached
through one of these narrow protocols.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from taskcore.messages import ContentBlock, ContextCondense, DisplayMessage, ModelMessage, TokenUsage

if TYPE_CHECKING:
    from taskcore.parsing import ToolUse
    from taskcore.task import Task


@dataclass
class TaskMetadata:
    """Summary derived from the display log on every save."""

    token_usage: TokenUsage
    last_condense: ContextCondense | None = None


@dataclass
class ActionResult:
    """Output of one executed action, fed back to the model next turn."""

    content: list[ContentBlock] = field(default_factory=list)
    # The operator declined the action.
    rejected: bool = False
    # The action finished the task (e.g. an accepted completion).
    completed: bool = False


@dataclass
class HostState:
    """Host-level state the engine reads on every turn."""

    mode: str
    language: str | None = None


@runtime_checkable
class PersistenceStore(Protocol):
    """Durable storage for the two per-task logs."""

    async def load_model_history(self, task_id: str) -> list[ModelMessage]: ...

    async def save_model_history(self, task_id: str, messages: list[ModelMessage]) -> None: ...

    async def load_display_history(self, task_id: str) -> list[DisplayMessage]: ...

    async def save_display_history(
        self, task_id: str, messages: list[DisplayMessage]
    ) -> None: ...

    def derive_metadata(self, messages: list[DisplayMessage]) -> TaskMetadata: ...


@runtime_checkable
class ActionExecutor(Protocol):
    """Executes the single action the model asked for in a turn."""

    @property
    def tool_names(self) -> frozenset[str]: ...

    async def execute(self, task: "Task", action: "ToolUse") -> ActionResult: ...


@runtime_checkable
class MentionResolver(Protocol):
    """Expands @-mentions in user content and snapshots the workspace."""

    async def resolve_mentions(self, content: list[ContentBlock]) -> list[ContentBlock]: ...

    async def snapshot_environment(self, include_file_details: bool) -> str: ...


@runtime_checkable
class PresentationSink(Protocol):
    """Receives display message changes (UI, logs, transport)."""

    async def on_display_message_created(self, message: DisplayMessage) -> None: ...

    async def on_display_message_updated(self, message: DisplayMessage) -> None: ...


@runtime_checkable
class CheckpointService(Protocol):
    """Workspace snapshotting, initialised once per task loop."""

    async def initialize(self, task: "Task") -> None: ...


@runtime_checkable
class EditView(Protocol):
    """Diff/edit view that may hold uncommitted changes mid-stream."""

    @property
    def is_editing(self) -> bool: ...

    async def revert_changes(self) -> None: ...

    async def reset(self) -> None:
        """Forget the previous turn's edit state; called before each streamed request."""
        ...


@runtime_checkable
class TaskHost(Protocol):
    """The provider hosting tasks: mode, language, prompts, replay."""

    async def get_state(self) -> HostState: ...

    async def handle_mode_switch(self, mode: str) -> None: ...

    async def get_system_prompt(self, task: "Task") -> str: ...

    async def reinit_from_history(self, task_id: str) -> Any: ...
