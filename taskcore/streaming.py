"""Streaming request controller: rate limiting, first-chunk check, retries."""

import asyncio
import json
import logging
import math
import time
from collections.abc import AsyncIterator, Awaitable
from typing import Any, Callable

from taskcore.abort import AbortController
from taskcore.errors import StreamFirstChunkFailed, StreamMidFailed
from taskcore.interaction import AskSayProtocol
from taskcore.llm.errors import describe_request_error, error_payload, retry_after_seconds
from taskcore.llm.protocol import ApiStreamChunk, ModelBackend
from taskcore.messages import Ask, AskResponse, ModelMessage, Say
from taskcore.settings import TaskSettings

logger = logging.getLogger(__name__)


def compute_retry_delay(
    base_delay: float,
    retry_attempt: int,
    rate_limit_delay: int = 0,
    retry_after: int | None = None,
) -> int:
    """Seconds to wait before retry ``retry_attempt + 1``.

    ``ceil(base * 2**attempt)``, replaced by the provider's own retry-after
    value when it sent one, and never shorter than the rate-limit delay.
    """
    exponential = math.ceil(base_delay * (2**retry_attempt))
    if retry_after is not None:
        exponential = retry_after
    return max(exponential, rate_limit_delay)


class StreamingRequestController:
    """Issues one model request and yields its chunks.

    The first chunk is awaited eagerly so connection, auth and rate-limit
    failures are handled here (retried or surfaced to the operator). A failure
    after the first chunk is raised as StreamMidFailed and never retried.
    """

    def __init__(
        self,
        task_id: str,
        backend: ModelBackend,
        interaction: AskSayProtocol,
        abort: AbortController,
        settings: TaskSettings,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.task_id = task_id
        self._backend = backend
        self._interaction = interaction
        self._abort = abort
        self._settings = settings
        self._sleep = sleep
        self._clock = clock
        self._last_request_time: float | None = None
        self.consecutive_auto_approved_requests = 0

    def rate_limit_delay(self) -> int:
        """Whole seconds still to wait before the next request may start."""
        if self._last_request_time is None or self._settings.rate_limit_seconds <= 0:
            return 0
        since = self._clock() - self._last_request_time
        return math.ceil(max(0.0, self._settings.rate_limit_seconds - since))

    async def _tick(self) -> None:
        await self._sleep(1)
        self._abort.raise_if_aborted("countdown")

    async def _check_request_ceiling(self) -> None:
        limit = self._settings.allowed_max_requests
        self.consecutive_auto_approved_requests += 1
        if limit is None or self.consecutive_auto_approved_requests <= limit:
            return
        result = await self._interaction.ask(
            Ask.AUTO_APPROVAL_MAX_REQ_REACHED, json.dumps({"count": limit})
        )
        if result.response != AskResponse.YES:
            logger.info("task %s: operator stopped at request ceiling %d", self.task_id, limit)
            await self._abort.abort()
            self._abort.raise_if_aborted("request ceiling")
        self.consecutive_auto_approved_requests = 0

    async def attempt_request(
        self,
        system_prompt: str,
        history: list[ModelMessage],
        metadata: dict[str, Any] | None = None,
        retry_attempt: int = 0,
    ) -> AsyncIterator[ApiStreamChunk]:
        self._abort.raise_if_aborted("attempt_request")
        rate_limit_delay = self.rate_limit_delay()
        if rate_limit_delay > 0 and retry_attempt == 0:
            for remaining in range(rate_limit_delay, 0, -1):
                await self._interaction.say(
                    Say.API_REQ_RETRY_DELAYED,
                    f"Rate limiting for {remaining} seconds...",
                    partial=True,
                )
                await self._tick()
        self._last_request_time = self._clock()
        await self._check_request_ceiling()

        failure: Exception | None = None
        try:
            iterator = self._backend.create_message(system_prompt, history, metadata).__aiter__()
            first = await iterator.__anext__()
        except StopAsyncIteration:
            return
        except Exception as e:
            failure = e

        if failure is not None:
            async for chunk in self._recover(
                failure, system_prompt, history, metadata, retry_attempt, rate_limit_delay
            ):
                yield chunk
            return

        try:
            self._abort.raise_if_aborted("first chunk")
            yield first
            try:
                async for chunk in iterator:
                    yield chunk
            except Exception as e:
                logger.warning(
                    "task %s: stream failed mid-way: %s", self.task_id, error_payload(e)
                )
                raise StreamMidFailed(describe_request_error(e)) from e
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _recover(
        self,
        error: Exception,
        system_prompt: str,
        history: list[ModelMessage],
        metadata: dict[str, Any] | None,
        retry_attempt: int,
        rate_limit_delay: int,
    ) -> AsyncIterator[ApiStreamChunk]:
        error_msg = describe_request_error(error)
        logger.warning(
            "task %s: first chunk failed (attempt %d): %s",
            self.task_id,
            retry_attempt,
            error_payload(error),
        )
        if self._settings.auto_retry:
            delay = compute_retry_delay(
                self._settings.request_delay_seconds,
                retry_attempt,
                rate_limit_delay,
                retry_after_seconds(error),
            )
            header = f"{error_msg}\n\nRetry attempt {retry_attempt + 1}\n"
            for remaining in range(delay, 0, -1):
                await self._interaction.say(
                    Say.API_REQ_RETRY_DELAYED,
                    f"{header}Retrying in {remaining} seconds...",
                    partial=True,
                )
                await self._tick()
            await self._interaction.say(
                Say.API_REQ_RETRY_DELAYED, f"{header}Retrying now...", partial=False
            )
            async for chunk in self.attempt_request(
                system_prompt, history, metadata, retry_attempt + 1
            ):
                yield chunk
            return

        result = await self._interaction.ask(Ask.API_REQ_FAILED, error_msg)
        if result.response != AskResponse.YES:
            raise StreamFirstChunkFailed(error_msg) from error
        await self._interaction.say(Say.API_REQ_RETRIED)
        async for chunk in self.attempt_request(system_prompt, history, metadata, 0):
            yield chunk
