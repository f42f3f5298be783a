"""Exceptions raised by the task engine."""


class TaskError(Exception):
    """Base class for task engine errors."""


class TaskAborted(TaskError):
    """The task was aborted; raised from any suspension point that notices it."""

    def __init__(self, task_id: str, where: str = "") -> None:
        self.task_id = task_id
        self.where = where
        detail = f" during {where}" if where else ""
        super().__init__(f"task {task_id} aborted{detail}")


class AskSuperseded(TaskError):
    """A newer display message replaced the ask before it was answered."""


class AskIgnored(AskSuperseded):
    """Raised by every partial ask; the caller is expected to swallow it."""


class StreamFirstChunkFailed(TaskError):
    """The model backend failed before producing its first chunk."""


class StreamMidFailed(TaskError):
    """The model stream failed after at least one chunk was delivered."""


class ModelProducedNoContent(TaskError):
    """The model stream finished without any assistant text."""


class ConsecutiveMistakeLimitExceeded(TaskError):
    """The consecutive mistake counter reached its configured limit."""
