"""Tests for the bootstrap helpers that wire a TaskStack from settings."""

from pathlib import Path

import pytest

from taskcore.runner import build_persistence, build_task_stack, run_task
from taskcore.settings import get_default_settings
from taskcore.store.sqlite import SqlitePersistence

from tests.fakes import FakeBackend, FakeExecutor, completion


def _settings(tmp_path: Path) -> dict:
    settings = get_default_settings()
    settings["storage"]["db_path"] = str(tmp_path / "tasks.db")
    settings["task"]["default_mode"] = "architect"
    settings["task"]["language"] = "de"
    return settings


class TestRunner:
    def test_build_task_stack_reads_mode_and_language(self, tmp_path: Path) -> None:
        settings = _settings(tmp_path)
        stack = build_task_stack(
            settings,
            executor=FakeExecutor(),
            persistence=build_persistence(settings),
            backend=FakeBackend(),
        )
        assert stack.mode == "architect"
        assert stack.language == "de"
        assert stack.depth == 0

    @pytest.mark.asyncio
    async def test_run_task_persists_logs(self, tmp_path: Path) -> None:
        settings = _settings(tmp_path)
        executor = FakeExecutor()
        task = await run_task(
            "write the docs",
            executor=executor,
            settings=settings,
            backend=FakeBackend([completion("docs written")]),
        )
        assert [a.name for a in executor.calls] == ["attempt_completion"]

        persistence = SqlitePersistence(db_path=tmp_path / "tasks.db")
        try:
            history = await persistence.load_model_history(task.task_id)
            display = await persistence.load_display_history(task.task_id)
        finally:
            await persistence.close()
        assert history[0].content[0].text == "<task>\nwrite the docs\n</task>"
        assert display[0].text == "write the docs"
