"""Tests for SqlitePersistence: round trips, replacement, metadata."""

from pathlib import Path

import pytest

from taskcore.messages import (
    ApiReqInfo,
    ContextCondense,
    DisplayMessage,
    ImageBlock,
    ImageSource,
    ModelMessage,
    Say,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from taskcore.store.sqlite import SqlitePersistence


@pytest.fixture
async def store(tmp_path: Path):
    s = SqlitePersistence(db_path=tmp_path / "tasks.db")
    await s.ensure_conn()
    yield s
    await s.close()


class TestSqlitePersistence:
    """Both logs persist whole and reload into the same models."""

    @pytest.mark.asyncio
    async def test_empty_task_loads_empty(self, store: SqlitePersistence) -> None:
        assert await store.load_model_history("missing") == []
        assert await store.load_display_history("missing") == []

    @pytest.mark.asyncio
    async def test_model_history_round_trip(self, store: SqlitePersistence) -> None:
        history = [
            ModelMessage(
                role="user",
                content=[
                    TextBlock(text="<task>\nhi\n</task>"),
                    ImageBlock(source=ImageSource(media_type="image/png", data="AAAA")),
                ],
                ts=1,
            ),
            ModelMessage(
                role="assistant",
                content=[ToolUseBlock(id="t1", name="read_file", input={"path": "a"})],
                ts=2,
            ),
            ModelMessage(
                role="user", content=[ToolResultBlock(tool_use_id="t1", content="x")], ts=3
            ),
            ModelMessage(role="assistant", content="summary", ts=4, is_summary=True),
        ]
        await store.save_model_history("t", history)
        assert await store.load_model_history("t") == history

    @pytest.mark.asyncio
    async def test_save_replaces_previous(self, store: SqlitePersistence) -> None:
        await store.save_display_history(
            "t", [DisplayMessage(ts=1, type="say", say=Say.TEXT, text="a")]
        )
        await store.save_display_history(
            "t", [DisplayMessage(ts=2, type="say", say=Say.TEXT, text="b", partial=False)]
        )
        loaded = await store.load_display_history("t")
        assert [(m.ts, m.text, m.partial) for m in loaded] == [(2, "b", False)]

    @pytest.mark.asyncio
    async def test_list_and_delete(self, store: SqlitePersistence) -> None:
        for task_id in ("a", "b"):
            await store.save_display_history(
                task_id, [DisplayMessage(ts=1, type="say", say=Say.TEXT, text=task_id)]
            )
        assert set(await store.list_task_ids()) == {"a", "b"}
        await store.delete_task("a")
        assert await store.list_task_ids() == ["b"]
        assert await store.load_display_history("a") == []

    @pytest.mark.asyncio
    async def test_reopen_reads_persisted_rows(self, tmp_path: Path) -> None:
        first = SqlitePersistence(db_path=tmp_path / "nested" / "tasks.db")
        await first.save_model_history("t", [ModelMessage(role="user", content="hello", ts=1)])
        await first.close()
        second = SqlitePersistence(db_path=tmp_path / "nested" / "tasks.db")
        loaded = await second.load_model_history("t")
        await second.close()
        assert loaded[0].content[0].text == "hello"

    def test_derive_metadata(self, tmp_path: Path) -> None:
        s = SqlitePersistence(db_path=tmp_path / "unused.db")
        condense = ContextCondense(summary="s", cost=0.01, prev_context_tokens=900, new_context_tokens=120)
        messages = [
            DisplayMessage(ts=1, type="say", say=Say.TEXT, text="task"),
            DisplayMessage(
                ts=2,
                type="say",
                say=Say.API_REQ_STARTED,
                text=ApiReqInfo(tokens_in=800, tokens_out=100, cost=0.2).to_text(),
            ),
            DisplayMessage(ts=3, type="say", say=Say.CONDENSE_CONTEXT, context_condense=condense),
        ]
        metadata = s.derive_metadata(messages)
        assert metadata.token_usage.total_tokens_in == 800
        assert metadata.token_usage.total_cost == pytest.approx(0.21)
        assert metadata.token_usage.context_tokens == 120
        assert metadata.last_condense == condense
