"""Fixtures wiring tasks to the fakes in tests/fakes.py."""

from typing import Any, Callable

import pytest

from taskcore.settings import reload_settings
from taskcore.task import Task

from tests.fakes import (
    FAST_SETTINGS,
    FakeBackend,
    FakeExecutor,
    FakeHost,
    MemoryPersistence,
    RecordingSink,
    SleepRecorder,
)


@pytest.fixture(autouse=True)
def _fresh_settings_cache() -> None:
    reload_settings()
    yield
    reload_settings()


@pytest.fixture
def persistence() -> MemoryPersistence:
    return MemoryPersistence()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def make_task(
    persistence: MemoryPersistence,
    sink: RecordingSink,
    executor: FakeExecutor,
    host: FakeHost,
    sleeper: SleepRecorder,
) -> Callable[..., Task]:
    """Factory wiring a Task to the shared fakes; the sink answers on its behalf."""

    def _make(backend: FakeBackend | None = None, **kwargs: Any) -> Task:
        kwargs.setdefault("settings", FAST_SETTINGS)
        kwargs.setdefault("host", host)
        kwargs.setdefault("executor", executor)
        task = Task(
            backend=backend or FakeBackend(),
            persistence=persistence,
            sink=sink,
            sleep=sleeper,
            **kwargs,
        )
        sink.task = task
        return task

    return _make
