from __future__ import annotations

import asyncio
import re

from automode_server.cancellation import RunCancelledError
from automode_server.plan_approval import PlanApprovalCancelledError
from automode_server.schemas import ErrorInfo, ErrorType
from automode_server.security import redact_sensitive_text
from automode_server.stream_processor import StreamError


_RATE_LIMIT_RE = re.compile(r"(?i)\b429\b|rate[ _-]?limit|too many requests|overloaded")
_AUTH_RE = re.compile(r"(?i)\b401\b|invalid (?:x-)?api[ _-]?key|authentication|unauthorized")
_RETRY_AFTER_RE = re.compile(r"(?i)retry[ _-]?after[\"']?\s*[:=]?\s*(\d+)")

_RATE_LIMIT_GUIDANCE = (
    "The provider is rate limiting requests. Reduce max concurrency for auto mode "
    "or wait before starting more features."
)


def is_abort_error(error: BaseException) -> bool:
    return isinstance(error, asyncio.CancelledError)


def is_cancellation_error(error: BaseException) -> bool:
    return isinstance(error, (RunCancelledError, PlanApprovalCancelledError)) or is_abort_error(error)


def classify_error(error: BaseException) -> ErrorInfo:
    if is_abort_error(error):
        return ErrorInfo(type=ErrorType.ABORT, message="Execution aborted", is_abort=True)

    message = redact_sensitive_text(str(error)) or ""
    if not message.strip():
        message = type(error).__name__

    if isinstance(error, (RunCancelledError, PlanApprovalCancelledError)):
        return ErrorInfo(type=ErrorType.CANCELLATION, message=message, is_abort=True)
    if _RATE_LIMIT_RE.search(message):
        return ErrorInfo(
            type=ErrorType.RATE_LIMIT,
            message=message,
            is_rate_limit=True,
            retry_after=_parse_retry_after(message),
        )
    if _AUTH_RE.search(message):
        return ErrorInfo(type=ErrorType.AUTHENTICATION, message=message)
    if isinstance(error, StreamError):
        return ErrorInfo(type=ErrorType.EXECUTION, message=message)
    return ErrorInfo(type=ErrorType.UNKNOWN, message=message)


def get_user_friendly_error_message(info: ErrorInfo) -> str:
    if info.type == ErrorType.ABORT:
        return "Feature execution was aborted."
    if info.type == ErrorType.CANCELLATION:
        return f"Feature execution was cancelled: {info.message}"
    if info.type == ErrorType.AUTHENTICATION:
        return f"Authentication with the agent provider failed: {info.message}"
    if info.is_rate_limit:
        wait_hint = f" Retry after {info.retry_after}s." if info.retry_after is not None else ""
        return f"{info.message}\n\n{_RATE_LIMIT_GUIDANCE}{wait_hint}"
    return info.message


def _parse_retry_after(message: str) -> int | None:
    match = _RETRY_AFTER_RE.search(message)
    if match is None:
        return None
    return int(match.group(1))
