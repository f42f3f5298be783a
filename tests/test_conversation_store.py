"""Tests for ConversationStore: timestamps, partial slots, persistence, sink."""

import pytest

from taskcore.events import TaskEvents, TaskTopics
from taskcore.messages import ApiReqInfo, DisplayMessage, ModelMessage, Say
from taskcore.store.conversation import ConversationStore

from tests.fakes import MemoryPersistence, RecordingSink


def _store(
    persistence: MemoryPersistence,
    sink: RecordingSink | None = None,
    clock_value: int = 1000,
) -> ConversationStore:
    return ConversationStore("t1", persistence, TaskEvents(), sink, clock=lambda: clock_value)


def _say(ts: int, say: str = Say.TEXT, text: str = "x", partial: bool | None = None) -> DisplayMessage:
    return DisplayMessage(ts=ts, type="say", say=say, text=text, partial=partial)


class TestTimestamps:
    """next_ts is strictly increasing even with a frozen clock."""

    def test_same_millisecond_gets_distinct_ts(self, persistence: MemoryPersistence) -> None:
        store = _store(persistence)
        assert [store.next_ts() for _ in range(3)] == [1000, 1001, 1002]

    @pytest.mark.asyncio
    async def test_loaded_messages_push_the_clock(self, persistence: MemoryPersistence) -> None:
        persistence.display["t1"] = [_say(5000)]
        store = _store(persistence)
        await store.load_persisted()
        assert store.next_ts() == 5001

    @pytest.mark.asyncio
    async def test_append_model_message_stamps_ts(self, persistence: MemoryPersistence) -> None:
        store = _store(persistence)
        await store.append_model_message(ModelMessage(role="user", content="hi"))
        await store.append_model_message(ModelMessage(role="assistant", content="yo"))
        assert [m.ts for m in store.model_history] == [1000, 1001]
        assert len(persistence.model["t1"]) == 2


class TestPartials:
    """Partial slots per (kind, subtype) and closing on append."""

    @pytest.mark.asyncio
    async def test_open_partial_only_when_trailing(self, persistence: MemoryPersistence) -> None:
        store = _store(persistence)
        await store.add_display_message(_say(1, partial=True))
        assert store.open_partial("say", Say.TEXT) is store.display_messages[0]
        assert store.open_partial("say", Say.REASONING) is None
        await store.add_display_message(_say(2, say=Say.ERROR))
        assert store.open_partial("say", Say.TEXT) is None

    @pytest.mark.asyncio
    async def test_append_closes_open_partials(
        self, persistence: MemoryPersistence, sink: RecordingSink
    ) -> None:
        store = _store(persistence, sink)
        await store.add_display_message(_say(1, partial=True))
        await store.add_display_message(_say(2, say=Say.ERROR))
        assert store.display_messages[0].partial is False
        assert sink.updated[-1].ts == 1 and sink.updated[-1].partial is False

    @pytest.mark.asyncio
    async def test_finalize_partial_keeps_ts(self, persistence: MemoryPersistence) -> None:
        store = _store(persistence)
        await store.add_display_message(_say(7, partial=True))
        message = store.display_messages[0]
        message.text = "final"
        await store.finalize_partial(message)
        assert store.display_messages[0].ts == 7
        assert persistence.display["t1"][0].partial is False
        assert persistence.display["t1"][0].text == "final"


class TestPersistence:
    """Saves, metadata derivation and failure isolation."""

    @pytest.mark.asyncio
    async def test_save_derives_token_usage(self, persistence: MemoryPersistence) -> None:
        events = TaskEvents()
        seen: list[dict] = []
        events.subscribe(TaskTopics.TOKEN_USAGE_UPDATED, seen.append)
        store = ConversationStore("t1", persistence, events, clock=lambda: 1)
        await store.add_display_message(_say(1, text="task"))
        info = ApiReqInfo(tokens_in=10, tokens_out=4, cost=0.5)
        await store.add_display_message(_say(2, say=Say.API_REQ_STARTED, text=info.to_text()))
        assert store.token_usage.total_tokens_in == 10
        assert store.token_usage.total_cost == 0.5
        assert seen[-1]["token_usage"].context_tokens == 14

    @pytest.mark.asyncio
    async def test_save_failure_is_logged_not_raised(
        self, persistence: MemoryPersistence, caplog: pytest.LogCaptureFixture
    ) -> None:
        persistence.fail_saves = True
        store = _store(persistence)
        await store.add_display_message(_say(1))
        await store.append_model_message(ModelMessage(role="user", content="hi"))
        assert len(store.display_messages) == 1
        assert len(store.model_history) == 1
        assert "failed to save" in caplog.text

    @pytest.mark.asyncio
    async def test_update_is_not_persisted(self, persistence: MemoryPersistence) -> None:
        store = _store(persistence)
        await store.add_display_message(_say(1, text="a"))
        saves = persistence.display_saves
        store.display_messages[0].text = "b"
        await store.update_display_message(store.display_messages[0])
        assert persistence.display_saves == saves
        assert persistence.display["t1"][0].text == "a"

    @pytest.mark.asyncio
    async def test_overwrite_replaces_both_logs(self, persistence: MemoryPersistence) -> None:
        store = _store(persistence)
        await store.add_display_message(_say(1))
        await store.overwrite_display_messages([])
        await store.overwrite_model_history([ModelMessage(role="user", content="x", ts=9)])
        assert persistence.display["t1"] == []
        assert store.next_ts() == 1000

    def test_find_last_index(self, persistence: MemoryPersistence) -> None:
        store = _store(persistence)
        store.display_messages = [_say(1), _say(2, say=Say.ERROR), _say(3)]
        assert store.find_last_index(lambda m: m.say == Say.TEXT) == 2
        assert store.find_last_index(lambda m: m.say == Say.REASONING) == -1


class TestSink:
    """The presentation sink is optional, weakly held and fault-isolated."""

    @pytest.mark.asyncio
    async def test_sink_released_is_skipped(self, persistence: MemoryPersistence) -> None:
        sink = RecordingSink()
        store = _store(persistence, sink)
        del sink
        await store.add_display_message(_say(1))
        assert len(store.display_messages) == 1

    @pytest.mark.asyncio
    async def test_sink_error_does_not_break_append(self, persistence: MemoryPersistence) -> None:
        class Broken(RecordingSink):
            async def on_display_message_created(self, message: DisplayMessage) -> None:
                raise RuntimeError("ui gone")

        sink = Broken()
        store = _store(persistence, sink)
        await store.add_display_message(_say(1))
        assert persistence.display["t1"][0].ts == 1
