"""Turn backend request failures into operator-facing text and retry hints."""

import json
import math
import re
from typing import Any

_STATUS_TEXT: dict[int, tuple[str, str]] = {
    400: ("Bad request", "Check the request parameters and model id."),
    401: ("Unauthorized", "Check that the API key is valid."),
    402: ("Payment required", "Check the account balance or billing settings."),
    403: ("Forbidden", "The API key lacks permission for this model or region."),
    404: ("Not found", "Check the base URL and model id."),
    408: ("Request timeout", "The provider took too long to answer; retry later."),
    413: ("Request too large", "Reduce the conversation size or condense the context."),
    429: ("Rate limited", "Too many requests; wait before retrying or lower the request rate."),
    500: ("Internal server error", "The provider failed; retry later."),
    502: ("Bad gateway", "The provider is unreachable; retry later."),
    503: ("Service unavailable", "The provider is overloaded; retry later."),
    504: ("Gateway timeout", "The provider did not answer in time; retry later."),
}

_RETRY_DELAY_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")


def status_code_of(error: BaseException) -> int | None:
    """Best-effort HTTP status of a backend exception."""
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def describe_request_error(error: BaseException) -> str:
    """Build the message shown when a request fails before streaming."""
    message = str(error) or type(error).__name__
    status = status_code_of(error)
    if status is None:
        return message
    status_text, solution = _STATUS_TEXT.get(
        status, ("Unexpected status", "Check the provider status and try again.")
    )
    return f"{status} {status_text}: {message}\n\n{solution}"


def _error_details(error: BaseException) -> list[dict[str, Any]]:
    details = getattr(error, "error_details", None) or getattr(error, "errorDetails", None)
    if isinstance(details, list):
        return [d for d in details if isinstance(d, dict)]
    body = getattr(error, "body", None)
    if isinstance(body, dict):
        inner = body.get("error", body)
        if isinstance(inner, dict) and isinstance(inner.get("details"), list):
            return [d for d in inner["details"] if isinstance(d, dict)]
    return []


def retry_after_hint(error: BaseException) -> float | None:
    """Seconds the provider asked us to wait on a 429, if it said so.

    Understands structured RetryInfo details (``retryDelay: "12s"``) and the
    ``retry-after`` response header.
    """
    if status_code_of(error) != 429:
        return None
    for detail in _error_details(error):
        if str(detail.get("@type", "")).endswith("RetryInfo"):
            match = _RETRY_DELAY_RE.match(str(detail.get("retryDelay", "")))
            if match:
                return float(match.group(1))
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers is not None:
        raw = headers.get("retry-after")
        if raw:
            try:
                return float(raw)
            except ValueError:
                return None
    return None


def retry_after_seconds(error: BaseException) -> int | None:
    """Whole seconds to wait including a one-second margin, or None."""
    hint = retry_after_hint(error)
    if hint is None:
        return None
    return math.ceil(hint) + 1


def error_payload(error: BaseException) -> str:
    """Compact JSON description for logs."""
    return json.dumps(
        {"type": type(error).__name__, "status": status_code_of(error), "message": str(error)},
        ensure_ascii=False,
    )
