"""Ask/say protocol: the operator-facing half of a task.

A *say* is informational and returns immediately. An *ask* blocks until the
operator responds or a newer message supersedes it. Both accept a tri-state
``partial`` flag used while content is still streaming:

* ``partial=True``: update the trailing partial message of the same subtype
  in place, or append a new partial one. Asks then raise ``AskIgnored``.
* ``partial=False``: finalise the matching partial in place, keeping its
  ``ts``, or append a complete message.
* ``partial=None``: append a complete message.
"""

import asyncio
import logging
from dataclasses import dataclass

from taskcore.abort import AbortController
from taskcore.errors import AskIgnored, AskSuperseded
from taskcore.events import TaskEvents, TaskTopics
from taskcore.messages import ContextCondense, DisplayMessage, ProgressStatus
from taskcore.store.conversation import ConversationStore

logger = logging.getLogger(__name__)


@dataclass
class AskResult:
    response: str
    text: str | None = None
    images: list[str] | None = None


class AskSayProtocol:
    """Single response slot plus the latest-interactive-message pointer."""

    def __init__(
        self,
        task_id: str,
        store: ConversationStore,
        abort: AbortController,
        events: TaskEvents,
        poll_interval: float = 0.1,
    ) -> None:
        self.task_id = task_id
        self._store = store
        self._abort = abort
        self._events = events
        self._poll_interval = poll_interval
        self._response: AskResult | None = None
        self._last_message_ts: int | None = None
        self._wake = asyncio.Event()
        abort.on_abort(self._wake.set)

    @property
    def last_message_ts(self) -> int | None:
        return self._last_message_ts

    def _touch(self, ts: int) -> None:
        self._last_message_ts = ts
        self._wake.set()

    async def ask(
        self,
        ask_type: str,
        text: str | None = None,
        partial: bool | None = None,
        progress_status: ProgressStatus | None = None,
    ) -> AskResult:
        self._abort.raise_if_aborted(f"ask:{ask_type}")
        if partial is not None:
            last = self._store.open_partial("ask", ask_type)
            if partial:
                if last is not None:
                    last.text = text
                    last.progress_status = progress_status
                    await self._store.update_display_message(last)
                    raise AskIgnored("updating existing partial")
                ts = self._store.next_ts()
                self._touch(ts)
                await self._store.add_display_message(
                    DisplayMessage(
                        ts=ts,
                        type="ask",
                        ask=ask_type,
                        text=text,
                        partial=True,
                        progress_status=progress_status,
                    )
                )
                raise AskIgnored("new partial")
            self._response = None
            if last is not None:
                ts = last.ts
                self._touch(ts)
                last.text = text
                last.progress_status = progress_status
                await self._store.finalize_partial(last)
            else:
                ts = self._store.next_ts()
                self._touch(ts)
                await self._store.add_display_message(
                    DisplayMessage(
                        ts=ts, type="ask", ask=ask_type, text=text, progress_status=progress_status
                    )
                )
        else:
            self._response = None
            ts = self._store.next_ts()
            self._touch(ts)
            await self._store.add_display_message(
                DisplayMessage(
                    ts=ts, type="ask", ask=ask_type, text=text, progress_status=progress_status
                )
            )
        return await self._wait_for_response(ts, ask_type)

    async def _wait_for_response(self, ts: int, ask_type: str) -> AskResult:
        while True:
            self._abort.raise_if_aborted(f"ask:{ask_type}")
            if self._last_message_ts != ts:
                raise AskSuperseded(f"ask {ask_type} at ts={ts} was superseded")
            result = self._response
            if result is not None:
                break
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
        self._response = None
        await self._events.emit(
            TaskTopics.ASK_RESPONDED, {"task_id": self.task_id, "response": result.response}
        )
        return result

    def handle_response(
        self, response: str, text: str | None = None, images: list[str] | None = None
    ) -> None:
        """Fill the response slot for the pending ask."""
        self._response = AskResult(response=response, text=text, images=images)
        self._wake.set()

    async def say(
        self,
        say_type: str,
        text: str | None = None,
        images: list[str] | None = None,
        partial: bool | None = None,
        checkpoint: dict | None = None,
        progress_status: ProgressStatus | None = None,
        *,
        non_interactive: bool = False,
        context_condense: ContextCondense | None = None,
    ) -> DisplayMessage:
        """Show a message; returns the display message that was added or updated."""
        self._abort.raise_if_aborted(f"say:{say_type}")
        if partial is not None:
            last = self._store.open_partial("say", say_type)
            if partial:
                if last is not None:
                    last.text = text
                    last.images = images
                    last.progress_status = progress_status
                    await self._store.update_display_message(last)
                    return last
                ts = self._store.next_ts()
                if not non_interactive:
                    self._touch(ts)
                message = DisplayMessage(
                    ts=ts,
                    type="say",
                    say=say_type,
                    text=text,
                    images=images,
                    partial=True,
                    progress_status=progress_status,
                    context_condense=context_condense,
                )
                await self._store.add_display_message(message)
                return message
            if last is not None:
                if not non_interactive:
                    self._touch(last.ts)
                last.text = text
                last.images = images
                last.progress_status = progress_status
                await self._store.finalize_partial(last)
                return last
        ts = self._store.next_ts()
        if not non_interactive:
            self._touch(ts)
        message = DisplayMessage(
            ts=ts,
            type="say",
            say=say_type,
            text=text,
            images=images,
            checkpoint=checkpoint,
            progress_status=progress_status,
            context_condense=context_condense,
        )
        await self._store.add_display_message(message)
        return message
