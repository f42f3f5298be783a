"""In-process task lifecycle events."""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)


class TaskTopics:
    """Events emitted by a task. Payloads are plain dicts."""

    # {"task_id"}
    STARTED = "task_started"
    # {"task_id", "abandoned"}
    ABORTED = "task_aborted"
    # {"task_id"}
    PAUSED = "task_paused"
    # {"task_id"}
    UNPAUSED = "task_unpaused"
    # {"task_id", "action": "created" | "updated", "message": DisplayMessage}
    MESSAGE = "message"
    # {"task_id", "response"}
    ASK_RESPONDED = "task_ask_responded"
    # {"task_id", "token_usage": TokenUsage}
    TOKEN_USAGE_UPDATED = "token_usage_updated"
    # {"task_id", "tool", "error"}
    TOOL_FAILED = "task_tool_failed"
    # {"task_id", "result"}
    SUBTASK_FINISHED = "subtask_finished"


class TaskEvents:
    """Subscriber registry with fault-isolated dispatch."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable[..., Any]]] = defaultdict(list)

    def subscribe(self, event: str, handler: Callable[..., Any]) -> None:
        """Subscribe to a task event (see TaskTopics)."""
        self._subscribers[event].append(handler)

    def unsubscribe(self, event: str, handler: Callable[..., Any]) -> None:
        """Remove a previously registered subscription."""
        if event in self._subscribers:
            self._subscribers[event] = [
                h for h in self._subscribers[event] if h != handler
            ]

    async def emit(self, event: str, data: dict[str, Any]) -> None:
        """Dispatch event to subscribers. Handler errors are logged, never raised."""
        for handler in self._subscribers.get(event, []):
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(data)
                else:
                    handler(data)
            except Exception as e:
                logger.exception("Task event handler error [%s]: %s", event, e)
