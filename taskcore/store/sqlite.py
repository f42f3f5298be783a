"""SQLite persistence for task message logs."""

import json
import logging
import time
from pathlib import Path

import aiosqlite

from taskcore.contract import TaskMetadata
from taskcore.messages import DisplayMessage, ModelMessage, Say
from taskcore.store.metrics import get_api_metrics

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS task_log (
    task_id     TEXT    NOT NULL,
    kind        TEXT    NOT NULL,
    payload     TEXT    NOT NULL,
    updated_at  REAL    NOT NULL,
    PRIMARY KEY (task_id, kind)
);

CREATE INDEX IF NOT EXISTS idx_tl_updated ON task_log(updated_at);
"""

_MODEL = "model"
_DISPLAY = "display"


class SqlitePersistence:
    """PersistenceStore over one aiosqlite connection.

    Each log is stored whole as a JSON list; every save replaces the row.
    """

    def __init__(self, db_path: Path, busy_timeout: int = 5000) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._conn: aiosqlite.Connection | None = None

    async def ensure_conn(self) -> aiosqlite.Connection:
        """Open connection and ensure schema. Idempotent."""
        if self._conn is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(str(self._db_path))
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA synchronous=NORMAL")
            await self._conn.execute(f"PRAGMA busy_timeout={self._busy_timeout}")
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()
            logger.debug("taskcore: schema ensured at %s", self._db_path)
        return self._conn

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def _load(self, task_id: str, kind: str) -> list[dict]:
        conn = await self.ensure_conn()
        cursor = await conn.execute(
            "SELECT payload FROM task_log WHERE task_id = ? AND kind = ?",
            (task_id, kind),
        )
        row = await cursor.fetchone()
        if not row:
            return []
        data = json.loads(row[0])
        return data if isinstance(data, list) else []

    async def _save(self, task_id: str, kind: str, items: list[dict]) -> None:
        conn = await self.ensure_conn()
        await conn.execute(
            """
            INSERT INTO task_log (task_id, kind, payload, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(task_id, kind) DO UPDATE SET
                payload = excluded.payload,
                updated_at = excluded.updated_at
            """,
            (task_id, kind, json.dumps(items, ensure_ascii=False), time.time()),
        )
        await conn.commit()

    async def load_model_history(self, task_id: str) -> list[ModelMessage]:
        return [ModelMessage.model_validate(item) for item in await self._load(task_id, _MODEL)]

    async def save_model_history(self, task_id: str, messages: list[ModelMessage]) -> None:
        await self._save(task_id, _MODEL, [m.model_dump(mode="json") for m in messages])

    async def load_display_history(self, task_id: str) -> list[DisplayMessage]:
        return [
            DisplayMessage.model_validate(item) for item in await self._load(task_id, _DISPLAY)
        ]

    async def save_display_history(self, task_id: str, messages: list[DisplayMessage]) -> None:
        await self._save(
            task_id,
            _DISPLAY,
            [m.model_dump(mode="json", exclude_none=True) for m in messages],
        )

    async def delete_task(self, task_id: str) -> None:
        """Remove both logs of a task."""
        conn = await self.ensure_conn()
        await conn.execute("DELETE FROM task_log WHERE task_id = ?", (task_id,))
        await conn.commit()

    async def list_task_ids(self) -> list[str]:
        """Task ids with a stored display log, most recently updated first."""
        conn = await self.ensure_conn()
        cursor = await conn.execute(
            "SELECT task_id FROM task_log WHERE kind = ? ORDER BY updated_at DESC",
            (_DISPLAY,),
        )
        rows = await cursor.fetchall()
        return [row[0] for row in rows]

    def derive_metadata(self, messages: list[DisplayMessage]) -> TaskMetadata:
        # The first message is the task text itself; it carries no usage.
        usage = get_api_metrics(messages[1:] if messages else [])
        last_condense = None
        for message in reversed(messages):
            if message.say == Say.CONDENSE_CONTEXT and message.context_condense:
                last_condense = message.context_condense
                break
        return TaskMetadata(token_usage=usage, last_condense=last_condense)
