"""Token and cost accounting derived from the display log."""

import logging

from pydantic import ValidationError

from taskcore.messages import ApiReqInfo, DisplayMessage, Say, TokenUsage

logger = logging.getLogger(__name__)


def parse_api_req_info(message: DisplayMessage) -> ApiReqInfo | None:
    """ApiReqInfo of an api_req_started say, or None if unreadable."""
    if message.type != "say" or message.say != Say.API_REQ_STARTED:
        return None
    try:
        return ApiReqInfo.from_text(message.text)
    except (ValidationError, ValueError):
        logger.debug("unreadable api_req_started payload at ts=%s", message.ts)
        return None


def get_api_metrics(messages: list[DisplayMessage]) -> TokenUsage:
    """Sum token counts and cost over a display log.

    ``context_tokens`` is the size of the most recent request (input, output and
    cache tokens) or, if a condensation happened after it, the condensed size.
    """
    usage = TokenUsage()
    for message in messages:
        info = parse_api_req_info(message)
        if info is not None:
            usage.total_tokens_in += info.tokens_in or 0
            usage.total_tokens_out += info.tokens_out or 0
            if info.cache_writes is not None:
                usage.total_cache_writes = (usage.total_cache_writes or 0) + info.cache_writes
            if info.cache_reads is not None:
                usage.total_cache_reads = (usage.total_cache_reads or 0) + info.cache_reads
            usage.total_cost += info.cost or 0.0
        elif message.type == "say" and message.say == Say.CONDENSE_CONTEXT:
            if message.context_condense is not None:
                usage.total_cost += message.context_condense.cost

    for message in reversed(messages):
        if message.type != "say":
            continue
        if message.say == Say.CONDENSE_CONTEXT and message.context_condense is not None:
            usage.context_tokens = message.context_condense.new_context_tokens
            break
        info = parse_api_req_info(message)
        if info is not None and info.tokens_in is not None:
            usage.context_tokens = (
                (info.tokens_in or 0)
                + (info.tokens_out or 0)
                + (info.cache_writes or 0)
                + (info.cache_reads or 0)
            )
            break
    return usage
