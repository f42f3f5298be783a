"""Bootstrap helpers: settings, logging, persistence and model backend for a TaskStack."""

import asyncio
import logging
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from taskcore import secrets
from taskcore.contract import (
    ActionExecutor,
    CheckpointService,
    EditView,
    MentionResolver,
    PresentationSink,
)
from taskcore.host import SystemPromptBuilder, TaskStack
from taskcore.llm import ModelBackend, ModelRouter
from taskcore.logging_config import setup_logging
from taskcore.settings import TaskSettings, get_setting, load_settings
from taskcore.store.sqlite import SqlitePersistence
from taskcore.task import Task

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def bootstrap(project_root: Path = _PROJECT_ROOT) -> dict[str, Any]:
    """Load .env, settings and logging. Returns the merged settings."""
    load_dotenv(project_root / ".env")
    settings = load_settings()
    setup_logging(project_root, settings)
    return settings


def build_persistence(settings: dict[str, Any], project_root: Path = _PROJECT_ROOT) -> SqlitePersistence:
    db_path = project_root / get_setting(settings, "storage.db_path", "data/tasks.db")
    return SqlitePersistence(
        db_path=db_path,
        busy_timeout=int(get_setting(settings, "storage.busy_timeout", 5000)),
    )


def build_task_stack(
    settings: dict[str, Any],
    *,
    executor: ActionExecutor,
    persistence: SqlitePersistence,
    backend: ModelBackend | None = None,
    resolver: MentionResolver | None = None,
    sink: PresentationSink | None = None,
    checkpoints: CheckpointService | None = None,
    edit_view: EditView | None = None,
    system_prompt: SystemPromptBuilder | str = "",
) -> TaskStack:
    """Wire a TaskStack from settings. ``backend`` defaults to agents.default."""
    if backend is None:
        backend = ModelRouter(settings=settings, secrets_getter=secrets.get_provider_key).get_backend(
            "default"
        )
    return TaskStack(
        backend=backend,
        persistence=persistence,
        executor=executor,
        settings=TaskSettings.from_settings(settings),
        sink=sink,
        resolver=resolver,
        checkpoints=checkpoints,
        edit_view=edit_view,
        system_prompt=system_prompt,
        mode=str(get_setting(settings, "task.default_mode", "code")),
        language=get_setting(settings, "task.language"),
    )


async def run_task(
    text: str,
    *,
    executor: ActionExecutor,
    settings: dict[str, Any] | None = None,
    images: list[str] | None = None,
    **collaborators: Any,
) -> Task:
    """Run one task to completion (or abort) and shut everything down."""
    settings = settings if settings is not None else bootstrap()
    persistence = build_persistence(settings)
    stack = build_task_stack(settings, executor=executor, persistence=persistence, **collaborators)
    try:
        task = await stack.start_task(text, images)
        run = stack.run_of(task)
        if run is not None:
            await run
        return task
    except asyncio.CancelledError:
        logger.info("run_task cancelled")
        raise
    finally:
        await stack.shutdown()
        await persistence.close()
