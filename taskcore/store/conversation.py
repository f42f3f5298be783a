"""ConversationStore: the two per-task logs and their persistence."""

import logging
import time
import weakref
from typing import Callable

from taskcore.contract import PersistenceStore, PresentationSink
from taskcore.events import TaskEvents, TaskTopics
from taskcore.messages import DisplayMessage, ModelMessage, TokenUsage

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class ConversationStore:
    """Owns the model history and the display log of one task.

    Save failures are logged and swallowed: losing one persistence round must
    not kill a running task. The presentation sink is held weakly and may be
    gone at any time.
    """

    def __init__(
        self,
        task_id: str,
        persistence: PersistenceStore,
        events: TaskEvents,
        sink: PresentationSink | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.task_id = task_id
        self._persistence = persistence
        self._events = events
        self._sink_ref: weakref.ref[PresentationSink] | None = (
            weakref.ref(sink) if sink is not None else None
        )
        self._clock = clock
        self._last_ts = 0
        self.model_history: list[ModelMessage] = []
        self.display_messages: list[DisplayMessage] = []
        # (kind, subtype) -> index of the open partial display message
        self._open_partials: dict[tuple[str, str | None], int] = {}
        self.token_usage = TokenUsage()

    # --- identity timestamps ---

    def next_ts(self) -> int:
        """Strictly increasing millisecond timestamp."""
        ts = max(self._clock(), self._last_ts + 1)
        self._last_ts = ts
        return ts

    def _observe_ts(self, ts: int | None) -> None:
        if ts is not None and ts > self._last_ts:
            self._last_ts = ts

    # --- model history ---

    async def append_model_message(self, message: ModelMessage) -> None:
        message.ts = self.next_ts()
        self.model_history.append(message)
        await self._save_model_history()

    async def overwrite_model_history(self, messages: list[ModelMessage]) -> None:
        self.model_history = list(messages)
        for message in self.model_history:
            self._observe_ts(message.ts)
        await self._save_model_history()

    async def _save_model_history(self) -> None:
        try:
            await self._persistence.save_model_history(self.task_id, self.model_history)
        except Exception:
            logger.exception("failed to save model history for task %s", self.task_id)

    # --- display log ---

    @property
    def last_display_message(self) -> DisplayMessage | None:
        return self.display_messages[-1] if self.display_messages else None

    def open_partial(self, kind: str, subtype: str | None) -> DisplayMessage | None:
        """The trailing partial message of this (kind, subtype), if any."""
        index = self._open_partials.get((kind, subtype))
        if index is None or index != len(self.display_messages) - 1:
            return None
        message = self.display_messages[index]
        return message if message.partial else None

    async def add_display_message(self, message: DisplayMessage) -> None:
        """Append, closing any open partial first."""
        for index in self._open_partials.values():
            stale = self.display_messages[index]
            if stale.partial:
                stale.partial = False
                await self._notify_updated(stale)
        self._open_partials.clear()
        self._observe_ts(message.ts)
        self.display_messages.append(message)
        if message.partial:
            self._open_partials[message.key] = len(self.display_messages) - 1
        sink = self._sink()
        if sink is not None:
            try:
                await sink.on_display_message_created(message)
            except Exception:
                logger.exception("presentation sink failed on created ts=%s", message.ts)
        await self._events.emit(
            TaskTopics.MESSAGE,
            {"task_id": self.task_id, "action": "created", "message": message},
        )
        await self.save_display_messages()

    async def update_display_message(self, message: DisplayMessage) -> None:
        """Publish an in-place change. Not persisted until the next save."""
        await self._notify_updated(message)

    async def finalize_partial(self, message: DisplayMessage) -> None:
        """Mark the message complete, persist, and publish. ts is kept."""
        message.partial = False
        self._open_partials.pop(message.key, None)
        await self.save_display_messages()
        await self._notify_updated(message)

    async def overwrite_display_messages(self, messages: list[DisplayMessage]) -> None:
        self.display_messages = list(messages)
        self._open_partials.clear()
        for message in self.display_messages:
            self._observe_ts(message.ts)
        await self.save_display_messages()

    async def save_display_messages(self) -> None:
        try:
            await self._persistence.save_display_history(self.task_id, self.display_messages)
            metadata = self._persistence.derive_metadata(self.display_messages)
        except Exception:
            logger.exception("failed to save display messages for task %s", self.task_id)
            return
        self.token_usage = metadata.token_usage
        await self._events.emit(
            TaskTopics.TOKEN_USAGE_UPDATED,
            {"task_id": self.task_id, "token_usage": self.token_usage},
        )

    def find_last_index(self, predicate: Callable[[DisplayMessage], bool]) -> int:
        for index in range(len(self.display_messages) - 1, -1, -1):
            if predicate(self.display_messages[index]):
                return index
        return -1

    # --- loading ---

    async def load_persisted(self) -> tuple[list[ModelMessage], list[DisplayMessage]]:
        """Load both logs from persistence into memory and return them."""
        self.model_history = await self._persistence.load_model_history(self.task_id)
        self.display_messages = await self._persistence.load_display_history(self.task_id)
        self._open_partials.clear()
        for message in self.model_history:
            self._observe_ts(message.ts)
        for display in self.display_messages:
            self._observe_ts(display.ts)
        return self.model_history, self.display_messages

    # --- presentation ---

    def _sink(self) -> PresentationSink | None:
        return self._sink_ref() if self._sink_ref is not None else None

    async def _notify_updated(self, message: DisplayMessage) -> None:
        sink = self._sink()
        if sink is not None:
            try:
                await sink.on_display_message_updated(message)
            except Exception:
                logger.exception("presentation sink failed on updated ts=%s", message.ts)
        await self._events.emit(
            TaskTopics.MESSAGE,
            {"task_id": self.task_id, "action": "updated", "message": message},
        )
