"""End-to-end tests for the task loop: turns, actions, nudges, aborts and failures."""

import asyncio
import logging
from dataclasses import replace

import pytest

from taskcore.contract import ActionResult
from taskcore.events import TaskTopics
from taskcore.formatting import (
    INTERRUPTED_BY_API_ERROR,
    INTERRUPTED_BY_FEEDBACK,
    INTERRUPTED_BY_TOOL_RESULT,
    INTERRUPTED_BY_USER,
    NO_ASSISTANT_MESSAGES,
    NO_RESPONSE_PLACEHOLDER,
    NO_TOOLS_USED,
    language_instruction,
)
from taskcore.llm.protocol import ReasoningChunk, TextChunk, UsageChunk
from taskcore.messages import ApiReqInfo, Ask, AskResponse, ModelMessage, Say, TextBlock
from taskcore.task import Task

from tests.fakes import (
    FAST_SETTINGS,
    FakeBackend,
    FakeExecutor,
    FakeHost,
    RecordingSink,
    completion,
)


def _texts(message: ModelMessage) -> list[str]:
    return [b.text for b in message.content if b.type == "text"]


def _api_reqs(task: Task) -> list[ApiReqInfo]:
    return [
        ApiReqInfo.from_text(m.text)
        for m in task.store.display_messages
        if m.say == Say.API_REQ_STARTED
    ]


def _says(task: Task, say: str) -> list:
    return [m for m in task.store.display_messages if m.type == "say" and m.say == say]


class FakeResolver:
    def __init__(self) -> None:
        self.snapshots: list[bool] = []

    async def resolve_mentions(self, content):
        return [
            TextBlock(text=b.text.replace("@/a.py", "'a.py' (see below)")) if b.type == "text" else b
            for b in content
        ]

    async def snapshot_environment(self, include_file_details: bool) -> str:
        self.snapshots.append(include_file_details)
        return f"<environment_details>files={include_file_details}</environment_details>"


class FakeCheckpoints:
    def __init__(self, fail: bool = False, block: bool = False) -> None:
        self.initialized: list[str] = []
        self.cancelled = False
        self._fail = fail
        self._block = block

    async def initialize(self, task: Task) -> None:
        self.initialized.append(task.task_id)
        if self._fail:
            raise RuntimeError("git not found")
        if self._block:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise


class TestSingleTurn:
    """One request, one action."""

    @pytest.mark.asyncio
    async def test_completion_ends_task(self, make_task, executor: FakeExecutor) -> None:
        backend = FakeBackend([completion("all fixed")])
        task = make_task(backend)
        await task.start("fix the bug")

        assert [a.name for a in executor.calls] == ["attempt_completion"]
        assert executor.calls[0].params == {"result": "all fixed"}
        history = task.store.model_history
        assert [m.role for m in history] == ["user", "assistant"]
        assert _texts(history[0])[0] == "<task>\nfix the bug\n</task>"
        assert task.store.display_messages[0].text == "fix the bug"
        info = _api_reqs(task)[0]
        assert (info.tokens_in, info.tokens_out, info.cost) == (10, 5, 0.0)
        assert info.request.startswith("<task>")
        system_prompt, _, metadata = backend.calls[0]
        assert system_prompt == "SYSTEM"
        assert metadata["task_id"] == task.task_id
        assert metadata["mode"] == "code"

    @pytest.mark.asyncio
    async def test_started_event_and_images(self, make_task) -> None:
        backend = FakeBackend([completion()])
        task = make_task(backend)
        started: list[dict] = []
        task.events.subscribe(TaskTopics.STARTED, started.append)
        await task.start("look", images=["data:image/png;base64,AAAA"])
        assert started == [{"task_id": task.task_id}]
        first = backend.calls[0][1][0]
        assert [b.type for b in first.content][:2] == ["text", "image"]

    @pytest.mark.asyncio
    async def test_usage_cost_feeds_metrics(self, make_task) -> None:
        script = [
            TextChunk("<attempt_completion><result>ok</result></attempt_completion>"),
            UsageChunk(input_tokens=100, output_tokens=20, cache_read_tokens=7, total_cost=0.25),
        ]
        task = make_task(FakeBackend([script]))
        await task.start("go")
        usage = task.get_token_usage()
        assert usage.total_tokens_in == 100
        assert usage.total_cost == 0.25
        assert usage.total_cache_reads == 7
        assert usage.context_tokens == 127
        assert task.store.token_usage.total_cost == 0.25

    @pytest.mark.asyncio
    async def test_reasoning_is_one_finalised_message(self, make_task) -> None:
        script = [ReasoningChunk("hmm"), ReasoningChunk(" ok"), *completion()]
        task = make_task(FakeBackend([script]))
        await task.start("go")
        reasoning = _says(task, Say.REASONING)
        assert len(reasoning) == 1
        assert reasoning[0].text == "hmm ok"
        assert reasoning[0].partial is False


class TestOneActionPerMessage:
    """Only the first completed action runs; later text is cut and marked."""

    @pytest.mark.asyncio
    async def test_second_action_is_discarded(self, make_task, executor: FakeExecutor) -> None:
        first = [
            TextChunk("Reading.\n<read_file><path>a.py</path></read_file>"),
            TextChunk("\nthen <read_file><path>b.py</path></read_file>"),
        ]
        backend = FakeBackend([first, completion()])
        task = make_task(backend)
        await task.start("inspect")

        assert [a.name for a in executor.calls] == ["read_file", "attempt_completion"]
        assert executor.calls[0].params == {"path": "a.py"}
        assistant = _texts(task.store.model_history[1])[0]
        assert assistant.endswith(INTERRUPTED_BY_TOOL_RESULT)
        assert "b.py" not in assistant
        result_message = task.store.model_history[2]
        assert _texts(result_message)[0] == "[read_file] Result:"
        assert [m.text for m in _says(task, Say.TEXT)][1:] == ["Reading."]

    @pytest.mark.asyncio
    async def test_no_marker_without_trailing_content(self, make_task) -> None:
        first = [TextChunk("<read_file><path>a.py</path></read_file>"), TextChunk("  \n")]
        task = make_task(FakeBackend([first, completion()]))
        await task.start("inspect")
        assert INTERRUPTED_BY_TOOL_RESULT not in _texts(task.store.model_history[1])[0]

    @pytest.mark.asyncio
    async def test_rejected_action_uses_feedback_marker(self, make_task, executor: FakeExecutor) -> None:
        async def reject(task: Task, action) -> ActionResult:
            return ActionResult(content=[TextBlock(text="The user denied this operation.")], rejected=True)

        executor._handlers["read_file"] = reject
        first = [TextChunk("<read_file><path>a.py</path></read_file>"), TextChunk("and more")]
        task = make_task(FakeBackend([first, completion()]))
        await task.start("inspect")
        assert _texts(task.store.model_history[1])[0].endswith(INTERRUPTED_BY_FEEDBACK)

    @pytest.mark.asyncio
    async def test_action_error_is_reported_to_model(self, make_task, executor: FakeExecutor) -> None:
        async def explode(task: Task, action) -> ActionResult:
            raise RuntimeError("disk unplugged")

        executor._handlers["read_file"] = explode
        backend = FakeBackend([[TextChunk("<read_file><path>a</path></read_file>")], completion()])
        task = make_task(backend)
        failures: list[dict] = []
        task.events.subscribe(TaskTopics.TOOL_FAILED, failures.append)
        await task.start("inspect")
        assert task.tool_usage["read_file"].attempts == 1
        assert task.tool_usage["read_file"].failures == 1
        assert failures[0]["error"] == "disk unplugged"
        next_user = backend.calls[1][1][-1]
        assert "Error executing read_file: disk unplugged" in _texts(next_user)


class TestNudgesAndLimits:
    """Responses without actions, empty responses and the mistake limit."""

    @pytest.mark.asyncio
    async def test_no_action_gets_nudged(self, make_task) -> None:
        backend = FakeBackend([[TextChunk("I think we're done.")], completion()])
        task = make_task(backend)
        await task.start("go")
        assert task.consecutive_mistake_count == 1
        assert _texts(backend.calls[1][1][-1]) == [NO_TOOLS_USED]
        assert _says(task, Say.TEXT)[-1].partial is False

    @pytest.mark.asyncio
    async def test_empty_response(self, make_task) -> None:
        backend = FakeBackend([[UsageChunk(input_tokens=3)], completion()])
        task = make_task(backend)
        await task.start("go")
        assert _says(task, Say.ERROR)[0].text == NO_ASSISTANT_MESSAGES
        assert _texts(task.store.model_history[1]) == [NO_RESPONSE_PLACEHOLDER]
        assert task.consecutive_mistake_count == 1
        assert len(backend.calls) == 2

    @pytest.mark.asyncio
    async def test_mistake_limit_asks_for_guidance(self, make_task, sink: RecordingSink) -> None:
        sink.responder = lambda m: (
            (AskResponse.MESSAGE, "read the file first")
            if m.ask == Ask.MISTAKE_LIMIT_REACHED
            else None
        )
        settings = replace(FAST_SETTINGS, consecutive_mistake_limit=1)
        backend = FakeBackend([[TextChunk("hmm")], completion()])
        task = make_task(backend, settings=settings)
        await task.start("go")
        assert task.consecutive_mistake_count == 0
        guidance = "\n".join(_texts(backend.calls[1][1][-1]))
        assert "<feedback>\nread the file first\n</feedback>" in guidance
        assert _says(task, Say.USER_FEEDBACK)[0].text == "read the file first"

    @pytest.mark.asyncio
    async def test_mistake_limit_plain_approval_resets_without_double_nudge(
        self, make_task, sink: RecordingSink
    ) -> None:
        sink.responder = lambda m: (
            (AskResponse.YES, None) if m.ask == Ask.MISTAKE_LIMIT_REACHED else None
        )
        settings = replace(FAST_SETTINGS, consecutive_mistake_limit=1)
        backend = FakeBackend([[TextChunk("hmm")], completion()])
        task = make_task(backend, settings=settings)
        await task.start("go")
        assert task.consecutive_mistake_count == 0
        assert _texts(backend.calls[1][1][-1]).count(NO_TOOLS_USED) == 1
        assert not _says(task, Say.USER_FEEDBACK)
        asks = [m for m in task.store.display_messages if m.ask == Ask.MISTAKE_LIMIT_REACHED]
        assert len(asks) == 1


class TestAbortAndFailures:
    """Aborts and backend failures while a response streams."""

    @pytest.mark.asyncio
    async def test_abort_mid_stream_keeps_partial_text(self, make_task) -> None:
        backend = FakeBackend()
        task = make_task(backend)

        async def abort_now() -> None:
            await task.abort_task()

        backend.scripts.append([TextChunk("Let me "), abort_now, TextChunk("think")])
        aborted: list[dict] = []
        task.events.subscribe(TaskTopics.ABORTED, aborted.append)
        await task.start("go")

        assert task.aborted and not task.abandoned
        assert aborted == [{"task_id": task.task_id, "abandoned": False}]
        assert _texts(task.store.model_history[-1]) == [f"Let me \n\n{INTERRUPTED_BY_USER}"]
        assert _api_reqs(task)[-1].cancel_reason == "user_cancelled"
        assert task.did_finish_aborting_stream
        assert all(not m.partial for m in task.store.display_messages)
        assert len(backend.calls) == 1

    @pytest.mark.asyncio
    async def test_abandoned_task_skips_interruption_record(self, make_task) -> None:
        backend = FakeBackend()
        task = make_task(backend)

        async def abandon() -> None:
            await task.abort_task(is_abandoned=True)

        backend.scripts.append([TextChunk("Let me "), abandon, TextChunk("think")])
        await task.start("go")
        assert task.abandoned
        assert [m.role for m in task.store.model_history] == ["user"]

    @pytest.mark.asyncio
    async def test_mid_stream_failure_replays_from_history(self, make_task, host: FakeHost) -> None:
        backend = FakeBackend([[TextChunk("Partial"), RuntimeError("socket closed")]])
        task = make_task(backend)
        await task.start("go")
        assert task.aborted
        assert host.reinit_calls == [task.task_id]
        assert _texts(task.store.model_history[-1]) == [f"Partial\n\n{INTERRUPTED_BY_API_ERROR}"]
        info = _api_reqs(task)[-1]
        assert info.cancel_reason == "streaming_failed"
        assert info.streaming_failed_message == "socket closed"

    @pytest.mark.asyncio
    async def test_declined_first_chunk_failure_aborts(
        self, make_task, sink: RecordingSink, host: FakeHost
    ) -> None:
        sink.responder = lambda m: (AskResponse.NO, None)
        task = make_task(FakeBackend([[RuntimeError("offline")]]))
        await task.start("go")
        assert task.aborted
        assert host.reinit_calls == []
        info = _api_reqs(task)[-1]
        assert info.cancel_reason == "streaming_failed"
        assert info.streaming_failed_message == "offline"

    @pytest.mark.asyncio
    async def test_abort_is_idempotent(self, make_task) -> None:
        task = make_task()
        aborted: list[dict] = []
        task.events.subscribe(TaskTopics.ABORTED, aborted.append)
        await task.abort_task()
        await task.abort_task(is_abandoned=True)
        assert len(aborted) == 1
        assert task.abandoned


class TestRequestContent:
    """Mentions, environment details and language steering."""

    @pytest.mark.asyncio
    async def test_language_instruction_appended(self, make_task) -> None:
        backend = FakeBackend([completion()])
        french = FakeHost(language="fr")
        task = make_task(backend, host=french)
        await task.start("bonjour")
        first_user = backend.calls[0][1][0]
        assert _texts(first_user)[-1] == language_instruction("fr")

    @pytest.mark.asyncio
    async def test_mentions_and_environment(self, make_task) -> None:
        resolver = FakeResolver()
        backend = FakeBackend(
            [[TextChunk("<read_file><path>a.py</path></read_file>")], completion()]
        )
        task = make_task(backend, resolver=resolver)
        await task.start("look at @/a.py")
        first_user = _texts(backend.calls[0][1][0])
        assert "'a.py' (see below)" in first_user[0]
        assert first_user[-1] == "<environment_details>files=True</environment_details>"
        assert resolver.snapshots == [True, False]

    @pytest.mark.asyncio
    async def test_text_only_model_gets_placeholders(self, make_task) -> None:
        from taskcore.context.history import IMAGE_PLACEHOLDER
        from taskcore.llm.protocol import ModelLimits

        backend = FakeBackend(
            [completion()], limits=ModelLimits(context_window=128_000, supports_images=False)
        )
        task = make_task(backend)
        await task.start("look", images=["data:image/png;base64,AAAA"])
        assert IMAGE_PLACEHOLDER in _texts(backend.calls[0][1][0])
        assert task.store.model_history[0].content[1].type == "image"


class TestCheckpoints:
    """Checkpoint initialisation runs in the background and never blocks the loop."""

    @pytest.mark.asyncio
    async def test_initialised_once(self, make_task) -> None:
        checkpoints = FakeCheckpoints()
        task = make_task(FakeBackend([completion()]), checkpoints=checkpoints)
        await task.start("go")
        await asyncio.sleep(0)
        assert checkpoints.initialized == [task.task_id]

    @pytest.mark.asyncio
    async def test_failure_is_logged(self, make_task, caplog: pytest.LogCaptureFixture) -> None:
        checkpoints = FakeCheckpoints(fail=True)
        task = make_task(FakeBackend([completion()]), checkpoints=checkpoints)
        with caplog.at_level(logging.WARNING):
            await task.start("go")
            await asyncio.sleep(0.01)
        assert "checkpoint init failed" in caplog.text
        assert len(task.store.model_history) == 2

    @pytest.mark.asyncio
    async def test_disabled_by_settings(self, make_task) -> None:
        checkpoints = FakeCheckpoints()
        settings = replace(FAST_SETTINGS, enable_checkpoints=False)
        task = make_task(FakeBackend([completion()]), checkpoints=checkpoints, settings=settings)
        await task.start("go")
        await asyncio.sleep(0)
        assert checkpoints.initialized == []

    @pytest.mark.asyncio
    async def test_abort_cancels_pending_init(self, make_task) -> None:
        checkpoints = FakeCheckpoints(block=True)
        task = make_task(FakeBackend([completion()]), checkpoints=checkpoints)
        await task.start("go")
        await asyncio.sleep(0)
        await task.abort_task()
        await asyncio.sleep(0.01)
        assert checkpoints.cancelled
