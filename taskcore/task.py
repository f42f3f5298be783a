"""Task: one end-to-end unit of agent work and its collaborators."""

import asyncio
import datetime as dt
import logging
import time
import uuid
import weakref
from typing import Any, Awaitable, Callable

from taskcore.abort import AbortController
from taskcore.context.history import normalize_history, strip_images
from taskcore.context.window import ContextWindowManager, TruncateResult
from taskcore.contract import (
    ActionExecutor,
    CheckpointService,
    EditView,
    HostState,
    MentionResolver,
    PersistenceStore,
    PresentationSink,
    TaskHost,
)
from taskcore.errors import ConsecutiveMistakeLimitExceeded
from taskcore.events import TaskEvents, TaskTopics
from taskcore.formatting import resumption_text, subtask_completed
from taskcore.interaction import AskResult, AskSayProtocol
from taskcore.llm.protocol import ModelBackend
from taskcore.loop import TaskLoopController
from taskcore.messages import (
    Ask,
    AskResponse,
    ContentBlock,
    ContextCondense,
    DisplayMessage,
    ModelMessage,
    ProgressStatus,
    Say,
    TextBlock,
    TokenUsage,
    ToolUsage,
    ToolUsageEntry,
    image_blocks,
)
from taskcore.parsing import AssistantMessageParser, TagActionParser
from taskcore.pause import PauseResumeCoordinator
from taskcore.settings import TaskSettings
from taskcore.store.conversation import ConversationStore
from taskcore.store.metrics import get_api_metrics, parse_api_req_info
from taskcore.streaming import StreamingRequestController

logger = logging.getLogger(__name__)

# Interruptions younger than this get the "file was reverted" note on resume.
RECENT_INTERRUPTION_MS = 30_000

_RESUME_ASKS = (Ask.RESUME_TASK, Ask.RESUME_COMPLETED_TASK)


class Task:
    """Owns the logs, flags and controllers of one task.

    The host and the parent task are held weakly: a task never keeps its
    provider or its parent alive, and checks the handle before each use.
    """

    def __init__(
        self,
        *,
        backend: ModelBackend,
        persistence: PersistenceStore,
        executor: ActionExecutor,
        host: TaskHost | None = None,
        sink: PresentationSink | None = None,
        resolver: MentionResolver | None = None,
        checkpoints: CheckpointService | None = None,
        edit_view: EditView | None = None,
        parser: AssistantMessageParser | None = None,
        settings: TaskSettings | None = None,
        task_id: str | None = None,
        parent: "Task | None" = None,
        root: "Task | None" = None,
        task_number: int = -1,
        system_prompt: str = "",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.task_id = task_id or str(uuid.uuid4())
        self.instance_id = uuid.uuid4().hex[:8]
        self.task_number = task_number
        self.settings = settings or TaskSettings()
        self.turn = 0
        self.consecutive_mistake_count = 0
        self.tool_usage: ToolUsage = {}
        self.is_streaming = False
        self.did_finish_aborting_stream = False

        self._host_ref = weakref.ref(host) if host is not None else None
        self._parent_ref = weakref.ref(parent) if parent is not None else None
        self._root_ref = weakref.ref(root) if root is not None else None
        self._system_prompt = system_prompt
        self.sleep = sleep

        self.backend = backend
        self.executor = executor
        self.resolver = resolver
        self.checkpoints = checkpoints
        self.edit_view = edit_view
        self.parser: AssistantMessageParser = parser or TagActionParser(executor.tool_names)

        self.events = TaskEvents()
        self.store = ConversationStore(self.task_id, persistence, self.events, sink)
        self._abort = AbortController(
            self.task_id, self.store, self.events, edit_view, lambda: self.is_streaming
        )
        self._pause = PauseResumeCoordinator(
            self.task_id, self._abort, self.events, self.settings.pause_poll_interval
        )
        self.interaction = AskSayProtocol(
            self.task_id, self.store, self._abort, self.events, self.settings.ask_poll_interval
        )
        self.streamer = StreamingRequestController(
            self.task_id, backend, self.interaction, self._abort, self.settings, sleep=sleep
        )
        self.context_window = ContextWindowManager(
            backend,
            auto_condense=self.settings.auto_condense_context,
            auto_condense_percent=self.settings.auto_condense_context_percent,
            model_max_tokens=self.settings.model_max_tokens,
        )
        self.loop = TaskLoopController(self)
        self._checkpoint_init: asyncio.Task | None = None
        self._abort.add_teardown(self._cancel_checkpoint_init)

    def __repr__(self) -> str:
        return f"Task({self.task_id}.{self.instance_id})"

    # --- handles ---

    def host(self) -> TaskHost | None:
        return self._host_ref() if self._host_ref is not None else None

    @property
    def parent(self) -> "Task | None":
        return self._parent_ref() if self._parent_ref is not None else None

    @property
    def root(self) -> "Task | None":
        return self._root_ref() if self._root_ref is not None else None

    # --- flags ---

    @property
    def aborted(self) -> bool:
        return self._abort.aborted

    @property
    def abandoned(self) -> bool:
        return self._abort.abandoned

    @property
    def paused(self) -> bool:
        return self._pause.paused

    @property
    def paused_mode(self) -> str | None:
        return self._pause.paused_mode

    @property
    def consecutive_auto_approved_requests(self) -> int:
        return self.streamer.consecutive_auto_approved_requests

    def raise_if_aborted(self, where: str = "") -> None:
        self._abort.raise_if_aborted(where)

    def check_mistake_limit(self) -> None:
        limit = self.settings.consecutive_mistake_limit
        if self.consecutive_mistake_count >= limit:
            raise ConsecutiveMistakeLimitExceeded(
                f"{self.consecutive_mistake_count} consecutive mistakes (limit {limit})"
            )

    # --- ask / say ---

    async def ask(
        self,
        ask_type: str,
        text: str | None = None,
        partial: bool | None = None,
        progress_status: ProgressStatus | None = None,
    ) -> AskResult:
        return await self.interaction.ask(ask_type, text, partial, progress_status)

    async def say(
        self,
        say_type: str,
        text: str | None = None,
        images: list[str] | None = None,
        partial: bool | None = None,
        **kwargs: Any,
    ) -> DisplayMessage:
        return await self.interaction.say(say_type, text, images, partial, **kwargs)

    def handle_response(
        self, response: str, text: str | None = None, images: list[str] | None = None
    ) -> None:
        self.interaction.handle_response(response, text, images)

    # --- lifecycle ---

    async def start(self, text: str | None = None, images: list[str] | None = None) -> None:
        """Run a fresh task from the operator's first message."""
        await self.store.overwrite_model_history([])
        await self.store.overwrite_display_messages([])
        await self.say(Say.TEXT, text, images)
        await self.events.emit(TaskTopics.STARTED, {"task_id": self.task_id})
        logger.info("task %s started", self.task_id)
        content: list[ContentBlock] = [TextBlock(text=f"<task>\n{text or ''}\n</task>")]
        content.extend(image_blocks(images))
        await self.loop.run(content)

    async def resume_from_history(self) -> None:
        """Reload persisted logs, ask the operator to resume, and continue the loop."""
        _, display = await self.store.load_persisted()
        display = list(display)
        while display and display[-1].type == "ask" and display[-1].ask in _RESUME_ASKS:
            display.pop()
        for index in range(len(display) - 1, -1, -1):
            info = parse_api_req_info(display[index])
            if info is None:
                continue
            if info.cost is None and info.cancel_reason is None:
                del display[index]
            break
        await self.store.overwrite_display_messages(display)

        last_message = display[-1] if display else None
        ask_type = (
            Ask.RESUME_COMPLETED_TASK
            if last_message is not None and last_message.ask == Ask.COMPLETION_RESULT
            else Ask.RESUME_TASK
        )
        await self.events.emit(TaskTopics.STARTED, {"task_id": self.task_id})
        result = await self.ask(ask_type)
        response_text: str | None = None
        response_images: list[str] | None = None
        if result.response == AskResponse.MESSAGE:
            await self.say(Say.USER_FEEDBACK, result.text, result.images)
            response_text, response_images = result.text, result.images

        history = normalize_history(self.store.model_history)
        carried: list[ContentBlock] = []
        if history and history[-1].role == "user":
            carried = list(history[-1].content)
            history = history[:-1]

        now_ms = int(time.time() * 1000)
        last_ts = last_message.ts if last_message is not None else now_ms
        text = resumption_text(
            dt.datetime.fromtimestamp(last_ts / 1000),
            dt.datetime.fromtimestamp(now_ms / 1000),
            completed=ask_type == Ask.RESUME_COMPLETED_TASK,
            recently_modified=now_ms - last_ts < RECENT_INTERRUPTION_MS,
            new_instructions=response_text,
        )
        carried.append(TextBlock(text=text))
        carried.extend(image_blocks(response_images))
        await self.store.overwrite_model_history(history)
        logger.info("task %s resumed from history (%d messages)", self.task_id, len(history))
        await self.loop.run(carried)

    async def abort_task(self, is_abandoned: bool = False) -> None:
        await self._abort.abort(is_abandoned)

    def add_teardown(self, hook: Callable[[], Any]) -> None:
        self._abort.add_teardown(hook)

    async def reinit_from_history(self) -> None:
        host = self.host()
        if host is None:
            logger.warning("task %s: no host to replay from history", self.task_id)
            return
        await host.reinit_from_history(self.task_id)

    # --- pause / resume ---

    async def pause(self, mode: str | None) -> None:
        await self._pause.pause(mode)

    async def wait_for_resume(self) -> None:
        await self._pause.wait_for_resume()

    async def resume_paused_task(self, last_message: str) -> None:
        """Continue after a sub-task finished with ``last_message`` as its result."""
        await self._pause.resume()
        try:
            await self.say(Say.SUBTASK_RESULT, last_message)
            await self.store.append_model_message(
                ModelMessage(role="user", content=[TextBlock(text=subtask_completed(last_message))])
            )
        except Exception:
            logger.exception("task %s: failed to record sub-task result", self.task_id)
            raise

    # --- tool ledger ---

    def record_tool_usage(self, tool_name: str) -> None:
        entry = self.tool_usage.setdefault(tool_name, ToolUsageEntry())
        entry.attempts += 1

    async def record_tool_error(self, tool_name: str, error: str | None = None) -> None:
        entry = self.tool_usage.setdefault(tool_name, ToolUsageEntry())
        entry.failures += 1
        await self.events.emit(
            TaskTopics.TOOL_FAILED, {"task_id": self.task_id, "tool": tool_name, "error": error}
        )

    # --- context ---

    def get_token_usage(self) -> TokenUsage:
        return get_api_metrics(self.store.display_messages[1:])

    async def system_prompt(self) -> str:
        host = self.host()
        if host is not None:
            return await host.get_system_prompt(self)
        return self._system_prompt

    async def host_state(self) -> HostState | None:
        host = self.host()
        return await host.get_state() if host is not None else None

    async def request_metadata(self) -> dict[str, Any]:
        state = await self.host_state()
        return {
            "task_id": self.task_id,
            "instance_id": self.instance_id,
            "mode": state.mode if state else None,
            "language": state.language if state else None,
        }

    def history_for_request(self) -> list[ModelMessage]:
        history = normalize_history(self.store.model_history)
        if not self.backend.get_model_limits().supports_images:
            history = strip_images(history)
        return history

    async def manage_context(self, system_prompt: str) -> None:
        """Condense or truncate before a request when the last one nearly filled the window."""
        usage = self.get_token_usage()
        if not usage.context_tokens:
            return
        result = await self.context_window.fit(
            self.store.model_history, usage.context_tokens, system_prompt, self.task_id
        )
        await self._apply_context_result(result)

    async def condense_context(self) -> None:
        """Condense now, regardless of thresholds."""
        usage = self.get_token_usage()
        result = await self.context_window.condense(
            self.store.model_history,
            usage.context_tokens,
            await self.system_prompt(),
            self.task_id,
        )
        await self._apply_context_result(result)

    async def _apply_context_result(self, result: TruncateResult) -> None:
        if result.messages is not self.store.model_history:
            await self.store.overwrite_model_history(result.messages)
        if result.summary:
            await self.say(
                Say.CONDENSE_CONTEXT,
                non_interactive=True,
                context_condense=ContextCondense(
                    summary=result.summary,
                    cost=result.cost,
                    prev_context_tokens=result.prev_context_tokens,
                    new_context_tokens=result.new_context_tokens or 0,
                ),
            )
        elif result.error:
            await self.say(Say.CONDENSE_CONTEXT_ERROR, result.error, non_interactive=True)

    # --- checkpoints ---

    def start_checkpoints(self) -> None:
        """Initialise checkpoints in the background; the loop does not wait for it."""
        if not self.settings.enable_checkpoints or self.checkpoints is None:
            return
        if self._checkpoint_init is not None:
            return
        self._checkpoint_init = asyncio.create_task(self.checkpoints.initialize(self))
        self._checkpoint_init.add_done_callback(self._on_checkpoint_init_done)

    def _on_checkpoint_init_done(self, fut: asyncio.Task) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            logger.warning("task %s: checkpoint init failed: %s", self.task_id, exc)

    def _cancel_checkpoint_init(self) -> None:
        if self._checkpoint_init is not None and not self._checkpoint_init.done():
            self._checkpoint_init.cancel()
