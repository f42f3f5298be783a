"""TaskStack: hosts tasks, tracks the active mode, hands results from child to parent."""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from taskcore.contract import (
    ActionExecutor,
    CheckpointService,
    EditView,
    HostState,
    MentionResolver,
    PersistenceStore,
    PresentationSink,
)
from taskcore.errors import TaskAborted
from taskcore.events import TaskTopics
from taskcore.llm.protocol import ModelBackend
from taskcore.settings import TaskSettings
from taskcore.task import Task

logger = logging.getLogger(__name__)

SystemPromptBuilder = Callable[[Task, HostState], Awaitable[str] | str]


class TaskStack:
    """LIFO stack of tasks; only the top task runs, the ones below are paused parents."""

    def __init__(
        self,
        *,
        backend: ModelBackend,
        persistence: PersistenceStore,
        executor: ActionExecutor,
        settings: TaskSettings | None = None,
        sink: PresentationSink | None = None,
        resolver: MentionResolver | None = None,
        checkpoints: CheckpointService | None = None,
        edit_view: EditView | None = None,
        system_prompt: SystemPromptBuilder | str = "",
        mode: str = "code",
        language: str | None = None,
    ) -> None:
        self._backend = backend
        self._persistence = persistence
        self._executor = executor
        self._settings = settings or TaskSettings()
        self._sink = sink
        self._resolver = resolver
        self._checkpoints = checkpoints
        self._edit_view = edit_view
        self._system_prompt = system_prompt
        self.mode = mode
        self.language = language
        self._stack: list[Task] = []
        self._runs: dict[str, asyncio.Task] = {}
        self._task_counter = 0

    # --- host contract ---

    async def get_state(self) -> HostState:
        return HostState(mode=self.mode, language=self.language)

    async def handle_mode_switch(self, mode: str) -> None:
        if mode != self.mode:
            logger.info("mode switch %s -> %s", self.mode, mode)
        self.mode = mode

    async def get_system_prompt(self, task: Task) -> str:
        if isinstance(self._system_prompt, str):
            return self._system_prompt
        result = self._system_prompt(task, await self.get_state())
        if asyncio.iscoroutine(result):
            return await result
        return result

    async def reinit_from_history(self, task_id: str) -> Task:
        """Replace the task with a fresh instance replaying its persisted logs."""
        old = next((t for t in self._stack if t.task_id == task_id), None)
        parent = old.parent if old is not None else None
        if old is not None:
            await old.abort_task(is_abandoned=True)
            self._stack.remove(old)
        task = self._new_task(task_id=task_id, parent=parent)
        self._push(task)
        self._launch(task, task.resume_from_history())
        return task

    # --- stack ---

    @property
    def current_task(self) -> Task | None:
        return self._stack[-1] if self._stack else None

    @property
    def depth(self) -> int:
        return len(self._stack)

    def run_of(self, task: Task) -> asyncio.Task | None:
        """The asyncio task driving ``task``'s loop, if launched."""
        return self._runs.get(task.instance_id)

    def _new_task(self, task_id: str | None = None, parent: Task | None = None) -> Task:
        self._task_counter += 1
        root = (parent.root or parent) if parent is not None else None
        return Task(
            backend=self._backend,
            persistence=self._persistence,
            executor=self._executor,
            host=self,
            sink=self._sink,
            resolver=self._resolver,
            checkpoints=self._checkpoints,
            edit_view=self._edit_view,
            settings=self._settings,
            task_id=task_id,
            parent=parent,
            root=root,
            task_number=self._task_counter,
        )

    def _push(self, task: Task) -> None:
        self._stack.append(task)
        logger.info("task %s pushed (depth=%d)", task.task_id, len(self._stack))

    def _launch(self, task: Task, coro: Awaitable[Any]) -> None:
        run = asyncio.ensure_future(coro)
        self._runs[task.instance_id] = run
        run.add_done_callback(lambda fut, key=task.instance_id: self._on_run_done(key, fut))

    def _on_run_done(self, key: str, fut: asyncio.Future) -> None:
        self._runs.pop(key, None)
        if fut.cancelled():
            return
        exc = fut.exception()
        if isinstance(exc, TaskAborted):
            logger.debug("task run %s stopped before its loop: %s", key, exc)
        elif exc is not None:
            logger.error("task run %s crashed: %s", key, exc)

    async def start_task(self, text: str, images: list[str] | None = None) -> Task:
        """Clear the stack and start a new root task."""
        await self.clear_stack()
        task = self._new_task()
        self._push(task)
        self._launch(task, task.start(text, images))
        return task

    async def spawn_subtask(self, parent: Task, message: str, mode: str | None = None) -> Task:
        """Pause ``parent`` in its current mode and start a child task on top of it."""
        await parent.pause(self.mode)
        if mode is not None:
            await self.handle_mode_switch(mode)
        child = self._new_task(parent=parent)
        self._push(child)
        logger.info("task %s spawned sub-task %s", parent.task_id, child.task_id)
        self._launch(child, child.start(message))
        return child

    async def finish_subtask(self, result: str) -> None:
        """Pop the finished child and resume its parent with ``result``."""
        child = await self._pop()
        parent = self.current_task
        if parent is None:
            logger.warning("finish_subtask with no parent task (result dropped)")
            return
        if child is not None:
            await child.events.emit(
                TaskTopics.SUBTASK_FINISHED, {"task_id": child.task_id, "result": result}
            )
        await parent.resume_paused_task(result)

    async def _pop(self) -> Task | None:
        if not self._stack:
            return None
        task = self._stack.pop()
        await task.abort_task(is_abandoned=True)
        logger.info("task %s popped (depth=%d)", task.task_id, len(self._stack))
        return task

    async def clear_task(self) -> None:
        """Abort and remove the current task."""
        await self._pop()

    async def clear_stack(self) -> None:
        while self._stack:
            await self._pop()

    async def shutdown(self) -> None:
        """Abort every task and wait for their loops to wind down."""
        await self.clear_stack()
        runs = list(self._runs.values())
        if runs:
            await asyncio.gather(*runs, return_exceptions=True)
