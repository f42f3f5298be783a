"""Tests for token and cost accounting over the display log."""

from taskcore.messages import ApiReqInfo, ContextCondense, DisplayMessage, Say
from taskcore.store.metrics import get_api_metrics, parse_api_req_info


def _req(ts: int, **info) -> DisplayMessage:
    return DisplayMessage(
        ts=ts, type="say", say=Say.API_REQ_STARTED, text=ApiReqInfo(**info).to_text()
    )


class TestGetApiMetrics:
    def test_sums_requests(self) -> None:
        usage = get_api_metrics(
            [
                _req(1, tokens_in=100, tokens_out=10, cache_reads=5, cost=0.1),
                _req(2, tokens_in=200, tokens_out=20, cache_writes=7, cost=0.2),
            ]
        )
        assert usage.total_tokens_in == 300
        assert usage.total_tokens_out == 30
        assert usage.total_cache_reads == 5
        assert usage.total_cache_writes == 7
        assert round(usage.total_cost, 6) == 0.3
        assert usage.context_tokens == 227

    def test_cache_totals_absent_when_never_reported(self) -> None:
        usage = get_api_metrics([_req(1, tokens_in=1, tokens_out=1)])
        assert usage.total_cache_reads is None
        assert usage.total_cache_writes is None

    def test_condensation_sets_context_size(self) -> None:
        usage = get_api_metrics(
            [
                _req(1, tokens_in=5_000, tokens_out=100, cost=0.1),
                DisplayMessage(
                    ts=2,
                    type="say",
                    say=Say.CONDENSE_CONTEXT,
                    context_condense=ContextCondense(summary="s", cost=0.05, new_context_tokens=800),
                ),
            ]
        )
        assert usage.context_tokens == 800
        assert round(usage.total_cost, 6) == 0.15

    def test_pending_request_does_not_reset_context(self) -> None:
        usage = get_api_metrics([_req(1, tokens_in=50, tokens_out=5), _req(2, request="next")])
        assert usage.context_tokens == 55

    def test_empty_log(self) -> None:
        usage = get_api_metrics([])
        assert usage.total_tokens_in == 0 and usage.context_tokens == 0


class TestParseApiReqInfo:
    def test_ignores_other_messages(self) -> None:
        assert parse_api_req_info(DisplayMessage(ts=1, type="say", say=Say.TEXT, text="{}")) is None

    def test_unreadable_payload(self) -> None:
        message = DisplayMessage(ts=1, type="say", say=Say.API_REQ_STARTED, text="not json")
        assert parse_api_req_info(message) is None

    def test_round_trip_omits_unset_fields(self) -> None:
        text = ApiReqInfo(request="r", cancel_reason="user_cancelled").to_text()
        assert "tokens_in" not in text
        message = DisplayMessage(ts=1, type="say", say=Say.API_REQ_STARTED, text=text)
        assert parse_api_req_info(message).cancel_reason == "user_cancelled"
