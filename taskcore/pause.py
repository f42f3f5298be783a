"""Parent task suspension while a sub-task runs."""

import asyncio
import logging

from taskcore.abort import AbortController
from taskcore.events import TaskEvents, TaskTopics

logger = logging.getLogger(__name__)


class PauseResumeCoordinator:
    """Paused flag, the mode active at pause time, and the resume wait.

    The wait has no overall timeout: a parent stays paused until its child
    finishes or the parent is aborted.
    """

    def __init__(
        self,
        task_id: str,
        abort: AbortController,
        events: TaskEvents,
        poll_interval: float = 1.0,
    ) -> None:
        self.task_id = task_id
        self._abort = abort
        self._events = events
        self._poll_interval = poll_interval
        self.paused = False
        self.paused_mode: str | None = None
        self._resumed = asyncio.Event()
        self._wait_handle: asyncio.Event | None = None
        abort.on_abort(self.cancel_wait)

    @property
    def waiting(self) -> bool:
        return self._wait_handle is not None

    async def pause(self, mode: str | None) -> None:
        self.paused = True
        self.paused_mode = mode
        self._resumed.clear()
        logger.info("task %s paused (mode=%s)", self.task_id, mode)
        await self._events.emit(TaskTopics.PAUSED, {"task_id": self.task_id})

    async def resume(self) -> None:
        self.paused = False
        self._resumed.set()
        logger.info("task %s resumed", self.task_id)
        await self._events.emit(TaskTopics.UNPAUSED, {"task_id": self.task_id})

    async def wait_for_resume(self) -> None:
        """Block until unpaused. Raises TaskAborted if the task is aborted meanwhile."""
        self._wait_handle = self._resumed
        try:
            while self.paused:
                self._abort.raise_if_aborted("wait_for_resume")
                try:
                    await asyncio.wait_for(self._resumed.wait(), timeout=self._poll_interval)
                except asyncio.TimeoutError:
                    pass
            self._abort.raise_if_aborted("wait_for_resume")
        finally:
            self._wait_handle = None

    def cancel_wait(self) -> None:
        """Wake the pending resume wait so it can observe the abort."""
        if self._wait_handle is not None:
            self._wait_handle.set()
