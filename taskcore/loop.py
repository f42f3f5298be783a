"""Task loop: one model request per turn until the task ends or is aborted."""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from taskcore.contract import ActionResult
from taskcore.errors import (
    ConsecutiveMistakeLimitExceeded,
    ModelProducedNoContent,
    StreamFirstChunkFailed,
    StreamMidFailed,
    TaskAborted,
)
from taskcore.formatting import (
    INTERRUPTED_BY_API_ERROR,
    INTERRUPTED_BY_FEEDBACK,
    INTERRUPTED_BY_TOOL_RESULT,
    INTERRUPTED_BY_USER,
    LOADING_SUFFIX,
    NO_ASSISTANT_MESSAGES,
    NO_RESPONSE_PLACEHOLDER,
    NO_TOOLS_USED,
    format_request,
    language_instruction,
    too_many_mistakes,
    tool_result_header,
)
from taskcore.llm.protocol import ReasoningChunk, TextChunk, UsageChunk
from taskcore.logging_config import task_log_context
from taskcore.messages import (
    ApiReqInfo,
    Ask,
    AskResponse,
    ContentBlock,
    DisplayMessage,
    ModelMessage,
    Say,
    TextBlock,
    image_blocks,
)
from taskcore.parsing import AssistantBlock, ToolUse

if TYPE_CHECKING:
    from taskcore.task import Task

logger = logging.getLogger(__name__)

MISTAKE_LIMIT_GUIDANCE = (
    "This may indicate a failure in the model's thought process or inability to use a "
    'tool properly, which can be mitigated with some user guidance (e.g. "Try breaking '
    'down the task into smaller steps").'
)


@dataclass
class TurnOutcome:
    end: bool
    # None means the turn produced nothing usable; the caller nudges.
    next_content: list[ContentBlock] | None = None


@dataclass
class TurnState:
    """Everything accumulated while one response streams in."""

    assistant_text: str = ""
    reasoning: str = ""
    blocks: list[AssistantBlock] = field(default_factory=list)
    presented: int = 0
    did_reject_tool: bool = False
    did_already_use_tool: bool = False
    completed: bool = False
    cut_at: int | None = None
    user_content: list[ContentBlock] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0
    total_cost: float | None = None

    @property
    def did_tool_use(self) -> bool:
        return any(b.type == "tool_use" for b in self.blocks)

    def has_trailing_content(self) -> bool:
        return self.cut_at is not None and bool(self.assistant_text[self.cut_at :].strip())


class TaskLoopController:
    """Drives turns for one task. Never lets an exception escape ``run``."""

    def __init__(self, task: "Task") -> None:
        self._task = task

    async def run(self, user_content: list[ContentBlock]) -> None:
        task = self._task
        with task_log_context(task.task_id):
            task.start_checkpoints()
            next_content = user_content
            include_file_details = True
            while not task.aborted:
                outcome = await self.run_turn(next_content, include_file_details)
                include_file_details = False
                if outcome.end:
                    break
                if outcome.next_content is None:
                    task.consecutive_mistake_count += 1
                    next_content = [TextBlock(text=NO_TOOLS_USED)]
                else:
                    next_content = outcome.next_content
            logger.info("task %s: loop finished (aborted=%s)", task.task_id, task.aborted)

    async def run_turn(
        self, user_content: list[ContentBlock], include_file_details: bool = False
    ) -> TurnOutcome:
        try:
            return await self._turn(user_content, include_file_details)
        except TaskAborted as e:
            logger.debug("task %s: turn stopped: %s", self._task.task_id, e)
        except Exception:
            logger.exception("task %s: turn failed", self._task.task_id)
        return TurnOutcome(end=True)

    async def _turn(
        self, user_content: list[ContentBlock], include_file_details: bool
    ) -> TurnOutcome:
        task = self._task
        task.raise_if_aborted("turn")
        task.turn += 1

        try:
            task.check_mistake_limit()
        except ConsecutiveMistakeLimitExceeded:
            user_content = await self._ask_for_guidance(user_content)

        if task.paused:
            await self._wait_for_parent_resume()

        api_req = await self._say_request_started(user_content)
        content = await self._prepare_user_content(user_content, include_file_details)
        await task.store.append_model_message(ModelMessage(role="user", content=content))
        api_req.text = ApiReqInfo(request=format_request(content)).to_text()
        await task.store.save_display_messages()
        await task.store.update_display_message(api_req)

        system_prompt = await task.system_prompt()
        await task.manage_context(system_prompt)
        state = TurnState()
        outcome = await self._stream_response(system_prompt, state, api_req)
        if outcome is not None:
            return outcome

        await self._finish_stream(state, api_req)
        try:
            self._require_content(state)
        except ModelProducedNoContent:
            await task.say(Say.ERROR, NO_ASSISTANT_MESSAGES)
            await task.store.append_model_message(
                ModelMessage(role="assistant", content=[TextBlock(text=NO_RESPONSE_PLACEHOLDER)])
            )
            return TurnOutcome(end=False)

        await task.store.append_model_message(
            ModelMessage(role="assistant", content=[TextBlock(text=state.assistant_text)])
        )
        if state.completed:
            return TurnOutcome(end=True)
        if not state.did_tool_use:
            state.user_content.append(TextBlock(text=NO_TOOLS_USED))
            task.consecutive_mistake_count += 1
        return TurnOutcome(end=False, next_content=state.user_content)

    # --- step 1 / 2: guards ---

    async def _ask_for_guidance(self, user_content: list[ContentBlock]) -> list[ContentBlock]:
        task = self._task
        result = await task.ask(Ask.MISTAKE_LIMIT_REACHED, MISTAKE_LIMIT_GUIDANCE)
        if result.response == AskResponse.MESSAGE:
            user_content = [
                *user_content,
                TextBlock(text=too_many_mistakes(result.text)),
                *image_blocks(result.images),
            ]
            await task.say(Say.USER_FEEDBACK, result.text, result.images)
        task.consecutive_mistake_count = 0
        return user_content

    async def _wait_for_parent_resume(self) -> None:
        task = self._task
        await task.wait_for_resume()
        host = task.host()
        if host is None or task.paused_mode is None:
            return
        state = await host.get_state()
        if state.mode != task.paused_mode:
            logger.info(
                "task %s: restoring mode %s after sub-task", task.task_id, task.paused_mode
            )
            await host.handle_mode_switch(task.paused_mode)
            await task.sleep(task.settings.mode_switch_delay)

    # --- step 3 / 4: request preparation ---

    async def _say_request_started(self, user_content: list[ContentBlock]) -> DisplayMessage:
        task = self._task
        preview = format_request(user_content) + LOADING_SUFFIX
        return await task.say(Say.API_REQ_STARTED, ApiReqInfo(request=preview).to_text())

    async def _prepare_user_content(
        self, user_content: list[ContentBlock], include_file_details: bool
    ) -> list[ContentBlock]:
        task = self._task
        content = list(user_content)
        if task.resolver is not None:
            content = await task.resolver.resolve_mentions(content)
            task.raise_if_aborted("resolve_mentions")
            environment = await task.resolver.snapshot_environment(include_file_details)
            task.raise_if_aborted("snapshot_environment")
            if environment:
                content.append(TextBlock(text=environment))
        host = task.host()
        if host is not None:
            state = await host.get_state()
            if state.language:
                content.append(TextBlock(text=language_instruction(state.language)))
        return content

    # --- step 5 / 6: streaming ---

    async def _stream_response(
        self, system_prompt: str, state: TurnState, api_req: DisplayMessage
    ) -> TurnOutcome | None:
        """Consume the stream. Returns an outcome only when the turn must stop here."""
        task = self._task
        if task.edit_view is not None:
            await task.edit_view.reset()
        task.is_streaming = True
        task.did_finish_aborting_stream = False
        stream = task.streamer.attempt_request(
            system_prompt, task.history_for_request(), await task.request_metadata()
        )
        try:
            try:
                async for chunk in stream:
                    task.raise_if_aborted("stream")
                    if isinstance(chunk, ReasoningChunk):
                        state.reasoning += chunk.text
                        await task.say(Say.REASONING, state.reasoning, partial=True)
                    elif isinstance(chunk, UsageChunk):
                        state.input_tokens += chunk.input_tokens
                        state.output_tokens += chunk.output_tokens
                        state.cache_write_tokens += chunk.cache_write_tokens or 0
                        state.cache_read_tokens += chunk.cache_read_tokens or 0
                        if chunk.total_cost is not None:
                            state.total_cost = chunk.total_cost
                    elif isinstance(chunk, TextChunk):
                        state.assistant_text += chunk.text
                        if not state.did_already_use_tool:
                            state.blocks = task.parser.parse(state.assistant_text)
                            await self._present(state)
                    task.raise_if_aborted("stream")
                    if state.did_already_use_tool and state.has_trailing_content():
                        marker = (
                            INTERRUPTED_BY_FEEDBACK
                            if state.did_reject_tool
                            else INTERRUPTED_BY_TOOL_RESULT
                        )
                        state.assistant_text = (
                            state.assistant_text[: state.cut_at].rstrip() + "\n\n" + marker
                        )
                        break
            finally:
                await stream.aclose()
        except TaskAborted:
            if not task.abandoned:
                await self.abort_stream(state, api_req, "user_cancelled")
            return TurnOutcome(end=True)
        except StreamMidFailed as e:
            logger.warning("task %s: stream failed, replaying from history", task.task_id)
            if not task.abandoned:
                await task.abort_task()
                await self.abort_stream(state, api_req, "streaming_failed", str(e))
                await task.reinit_from_history()
            return TurnOutcome(end=True)
        except StreamFirstChunkFailed as e:
            logger.warning("task %s: request failed and was not retried: %s", task.task_id, e)
            self._update_api_req(api_req, state, "streaming_failed", str(e))
            await task.store.save_display_messages()
            await task.abort_task()
            return TurnOutcome(end=True)
        finally:
            task.is_streaming = False
        return None

    async def _present(self, state: TurnState) -> None:
        """Show completed text, execute the first completed action, stop after it."""
        task = self._task
        while state.presented < len(state.blocks):
            if state.did_already_use_tool:
                return
            block = state.blocks[state.presented]
            if block.type == "text":
                await task.say(Say.TEXT, block.content, partial=block.partial)
                if block.partial:
                    return
                state.presented += 1
                continue
            if block.partial:
                return
            await self._execute(block, state)
            state.presented += 1

    async def _execute(self, action: ToolUse, state: TurnState) -> None:
        task = self._task
        task.record_tool_usage(action.name)
        try:
            result = await task.executor.execute(task, action)
        except TaskAborted:
            raise
        except Exception as e:
            logger.exception("task %s: action %s failed", task.task_id, action.name)
            await task.record_tool_error(action.name, str(e))
            result = ActionResult(
                content=[TextBlock(text=f"Error executing {action.name}: {e}")]
            )
        state.user_content.append(TextBlock(text=tool_result_header(action.name)))
        state.user_content.extend(result.content)
        state.did_already_use_tool = True
        state.did_reject_tool = result.rejected
        state.completed = result.completed
        state.cut_at = action.end

    async def abort_stream(
        self,
        state: TurnState,
        api_req: DisplayMessage,
        cancel_reason: str,
        failed_message: str | None = None,
    ) -> None:
        """Persist whatever streamed so far, marked as interrupted."""
        task = self._task
        if task.edit_view is not None and task.edit_view.is_editing:
            try:
                await task.edit_view.revert_changes()
            except Exception:
                logger.exception("task %s: failed to revert edit view", task.task_id)
        last = task.store.last_display_message
        if last is not None and last.partial:
            await task.store.finalize_partial(last)
        marker = INTERRUPTED_BY_API_ERROR if cancel_reason == "streaming_failed" else INTERRUPTED_BY_USER
        await task.store.append_model_message(
            ModelMessage(
                role="assistant",
                content=[TextBlock(text=f"{state.assistant_text}\n\n{marker}")],
            )
        )
        self._update_api_req(api_req, state, cancel_reason, failed_message)
        await task.store.save_display_messages()
        task.did_finish_aborting_stream = True

    # --- step 7 / 8 ---

    async def _finish_stream(self, state: TurnState, api_req: DisplayMessage) -> None:
        task = self._task
        if not state.did_already_use_tool:
            for block in state.blocks:
                block.partial = False
            await self._present(state)
        if task.store.open_partial("say", Say.REASONING) is not None:
            await task.say(Say.REASONING, state.reasoning, partial=False)
        self._update_api_req(api_req, state)
        await task.store.save_display_messages()
        await task.store.update_display_message(api_req)

    def _require_content(self, state: TurnState) -> None:
        if not state.assistant_text.strip():
            raise ModelProducedNoContent(f"task {self._task.task_id}: empty model response")

    def _update_api_req(
        self,
        api_req: DisplayMessage,
        state: TurnState,
        cancel_reason: str | None = None,
        failed_message: str | None = None,
    ) -> None:
        info = ApiReqInfo.from_text(api_req.text)
        info.tokens_in = state.input_tokens
        info.tokens_out = state.output_tokens
        info.cache_writes = state.cache_write_tokens
        info.cache_reads = state.cache_read_tokens
        info.cost = state.total_cost if state.total_cost is not None else 0.0
        if cancel_reason is not None:
            info.cancel_reason = cancel_reason
            info.streaming_failed_message = failed_message
        api_req.text = info.to_text()
