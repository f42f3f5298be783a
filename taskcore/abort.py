"""Cancellation of a task: flags, wakeups, resource teardown."""

import inspect
import logging
from typing import Any, Callable

from taskcore.contract import EditView
from taskcore.errors import TaskAborted
from taskcore.events import TaskEvents, TaskTopics
from taskcore.store.conversation import ConversationStore

logger = logging.getLogger(__name__)


class AbortController:
    """Owns the terminal aborted/abandoned flags of one task.

    ``abort`` may be called any number of times; teardown runs once. Waiters
    register wake callbacks so that blocked asks and pause waits notice the
    abort on their next wake instead of at the next poll tick.
    """

    def __init__(
        self,
        task_id: str,
        store: ConversationStore,
        events: TaskEvents,
        edit_view: EditView | None = None,
        is_streaming: Callable[[], bool] = lambda: False,
    ) -> None:
        self.task_id = task_id
        self._store = store
        self._events = events
        self._edit_view = edit_view
        self._is_streaming = is_streaming
        self.aborted = False
        self.abandoned = False
        self._wakers: list[Callable[[], Any]] = []
        self._teardowns: list[Callable[[], Any]] = []

    def on_abort(self, waker: Callable[[], Any]) -> None:
        """Register a sync callback run as soon as the task is aborted."""
        self._wakers.append(waker)

    def add_teardown(self, hook: Callable[[], Any]) -> None:
        """Register a release hook (terminal, browser session, watcher). May be async."""
        self._teardowns.append(hook)

    def raise_if_aborted(self, where: str = "") -> None:
        if self.aborted:
            raise TaskAborted(self.task_id, where)

    async def abort(self, is_abandoned: bool = False) -> None:
        if is_abandoned:
            self.abandoned = True
        if self.aborted:
            return
        self.aborted = True
        logger.info("task %s aborted (abandoned=%s)", self.task_id, self.abandoned)
        await self._events.emit(
            TaskTopics.ABORTED, {"task_id": self.task_id, "abandoned": self.abandoned}
        )
        for waker in self._wakers:
            try:
                waker()
            except Exception:
                logger.exception("abort waker failed for task %s", self.task_id)
        for hook in self._teardowns:
            try:
                result = hook()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("teardown hook failed for task %s", self.task_id)
        if self._edit_view is not None and self._is_streaming() and self._edit_view.is_editing:
            try:
                await self._edit_view.revert_changes()
            except Exception:
                logger.exception("failed to revert edit view for task %s", self.task_id)
        await self._store.save_display_messages()
