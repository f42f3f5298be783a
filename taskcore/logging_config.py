"""Logging setup for processes hosting the engine, with per-task log context."""

import logging
import logging.handlers
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Iterator

task_id_var: ContextVar[str | None] = ContextVar("task_id", default=None)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [task=%(task_id)s]: %(message)s"


@contextmanager
def task_log_context(task_id: str) -> Iterator[None]:
    """Tag every record logged inside the block (and tasks spawned from it) with ``task_id``."""
    token = task_id_var.set(task_id)
    try:
        yield
    finally:
        task_id_var.reset(token)


class TaskContextFilter(logging.Filter):
    """Adds ``record.task_id`` from the current context, ``-`` outside a task."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.task_id = task_id_var.get() or "-"
        return True


def _file_handler(project_root: Path, cfg: dict[str, Any]) -> logging.Handler:
    log_path = project_root / cfg.get("file", "logs/taskcore.log")
    log_path.parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=int(cfg.get("max_bytes", 10 * 1024 * 1024)),
        backupCount=int(cfg.get("backup_count", 3)),
        encoding="utf-8",
    )


def setup_logging(project_root: Path, settings: dict[str, Any]) -> None:
    """Configure the root logger from settings["logging"].

    Rotating file handler plus optional console output; each line carries
    the id of the task whose loop produced it.
    """
    cfg = settings.get("logging", {})
    level = getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    root = logging.getLogger()
    root.setLevel(level)
    for h in root.handlers[:]:
        root.removeHandler(h)
    handlers = [_file_handler(project_root, cfg)]
    if cfg.get("log_to_console", False):
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(TaskContextFilter())
        root.addHandler(handler)
