"""Bridge error taxonomy and upstream error classification.

Every component raises subclasses of ``BridgeError``. Upstream failures of any
shape (OpenAI SDK exceptions, realtime ``error`` event payloads, websocket
closures, timeouts) are turned into an ``ErrorVerdict`` by ``classify_error``,
which drives retry/fallback decisions and the message shown to the user.
"""
import asyncio
from enum import Enum
from typing import Any, Optional

import openai
from pydantic import BaseModel
from websockets.exceptions import ConnectionClosed


class ErrorKind(str, Enum):
    """Classified error kinds."""

    TRANSPORT_FAULT = "transport_fault"
    QUOTA_OR_RATE_LIMIT = "quota_or_rate_limit"
    INVALID_STATE = "invalid_state"
    UNKNOWN_CONVERSATION = "unknown_conversation"
    TOOL_DISPATCH_FAILURE = "tool_dispatch_failure"
    PERSISTENCE_FAILURE = "persistence_failure"
    UPSTREAM_ERROR = "upstream_error"

    def __str__(self) -> str:
        return self.value


class BridgeError(Exception):
    """Base class for all bridge errors."""

    kind: ErrorKind = ErrorKind.UPSTREAM_ERROR
    retryable: bool = False

    def __init__(self, message: str, *, verdict: Optional["ErrorVerdict"] = None):
        super().__init__(message)
        self.message = message
        self.verdict = verdict
        # Set once the error was already broadcast to the conversation's listeners
        self.announced = False


class TransportFault(BridgeError):
    """Upstream transport went away. Recoverable: the next turn reconnects."""

    kind = ErrorKind.TRANSPORT_FAULT
    retryable = True


class UpstreamTimeout(TransportFault):
    """An upstream call did not finish within its bounded wait."""


class QuotaOrRateLimit(BridgeError):
    """Upstream refused the request because of quota or rate limits."""

    kind = ErrorKind.QUOTA_OR_RATE_LIMIT
    retryable = True


class UpstreamError(BridgeError):
    """Any other upstream failure."""

    kind = ErrorKind.UPSTREAM_ERROR


class InvalidState(BridgeError):
    """Operation attempted against a conversation in the wrong lifecycle state."""

    kind = ErrorKind.INVALID_STATE


class ConversationClosed(InvalidState):
    """The referenced conversation is already finalized."""


class AlreadyFinalized(InvalidState):
    """End requested for a conversation that is already finalized."""


class UnknownConversation(BridgeError):
    """The referenced conversation id does not exist."""

    kind = ErrorKind.UNKNOWN_CONVERSATION


class MissingConversationId(BridgeError):
    """A request that must name a conversation did not carry an id."""

    kind = ErrorKind.UNKNOWN_CONVERSATION


class ToolDispatchFailure(BridgeError):
    """A built-in or escalation tool failed."""

    kind = ErrorKind.TOOL_DISPATCH_FAILURE


class EscalationTimeout(ToolDispatchFailure):
    """The supervisor pass exceeded its own timeout."""


class PersistenceFailure(BridgeError):
    """Durable write of a finalized transcript failed."""

    kind = ErrorKind.PERSISTENCE_FAILURE


class ErrorVerdict(BaseModel):
    """Structured classification of an error."""

    kind: ErrorKind
    retryable: bool
    status: Optional[int] = None
    code: Optional[str] = None
    error_type: Optional[str] = None
    message: str
    user_message: str
    retry_after_seconds: Optional[float] = None


QUOTA_CODES = {
    "insufficient_quota",
    "rate_limit_exceeded",
    "billing_hard_limit_reached",
}

QUOTA_KEYWORDS = [
    "exceeded your current quota",
    "rate limit",
    "billing",
    "insufficient_quota",
]

TRANSPORT_USER_MESSAGE = (
    "The connection to the assistant service was interrupted. "
    "Please send your message again to reconnect."
)
TIMEOUT_USER_MESSAGE = (
    "The assistant service took too long to respond. Please try again."
)
QUOTA_USER_MESSAGE = (
    "The OpenAI API quota has been exceeded. "
    "Please check the plan and billing details for this API key."
)
RATE_LIMIT_USER_MESSAGE = (
    "The OpenAI API rate limit has been reached. Please wait a moment and try again."
)


def _retry_after(err: Any) -> Optional[float]:
    """Read a Retry-After header from an SDK status error, if present."""
    response = getattr(err, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _fields(err: Any) -> tuple:
    """Extract (status, code, error_type, message) from any error shape."""
    if isinstance(err, dict):
        inner = err.get("error") if isinstance(err.get("error"), dict) else err
        return (
            err.get("status") or inner.get("status"),
            inner.get("code"),
            inner.get("type"),
            inner.get("message") or str(err),
        )

    status = getattr(err, "status_code", None) or getattr(err, "status", None)
    code = getattr(err, "code", None)
    error_type = getattr(err, "type", None)
    body = getattr(err, "body", None)
    if isinstance(body, dict):
        nested = body.get("error") if isinstance(body.get("error"), dict) else body
        code = code or nested.get("code")
        error_type = error_type or nested.get("type")
    message = getattr(err, "message", None) or str(err) or type(err).__name__
    return status, code, error_type, message


def classify_error(err: Any) -> ErrorVerdict:
    """
    Inspect an error from any upstream call and return a structured verdict.

    Works for OpenAI SDK exceptions, realtime ``error`` event payloads (dicts),
    websocket closures, timeouts and the bridge's own exceptions.
    """
    if isinstance(err, BridgeError) and err.verdict is not None:
        return err.verdict

    if isinstance(err, (asyncio.TimeoutError, openai.APITimeoutError, UpstreamTimeout)):
        return ErrorVerdict(
            kind=ErrorKind.TRANSPORT_FAULT,
            retryable=True,
            message=str(err) or "timeout",
            user_message=TIMEOUT_USER_MESSAGE,
        )

    if isinstance(err, (ConnectionClosed, openai.APIConnectionError, ConnectionError, TransportFault)):
        return ErrorVerdict(
            kind=ErrorKind.TRANSPORT_FAULT,
            retryable=True,
            message=str(err) or type(err).__name__,
            user_message=TRANSPORT_USER_MESSAGE,
        )

    if isinstance(err, BridgeError) and not isinstance(err, (QuotaOrRateLimit, UpstreamError)):
        return ErrorVerdict(
            kind=err.kind,
            retryable=err.retryable,
            message=err.message,
            user_message=err.message,
        )

    status, code, error_type, message = _fields(err)
    message_lower = (message or "").lower()
    is_quota_or_rate_limit = (
        status == 429
        or isinstance(err, (openai.RateLimitError, QuotaOrRateLimit))
        or code in QUOTA_CODES
        or error_type in QUOTA_CODES
        or any(keyword in message_lower for keyword in QUOTA_KEYWORDS)
    )

    if is_quota_or_rate_limit:
        if code == "insufficient_quota" or error_type == "insufficient_quota":
            user_message = QUOTA_USER_MESSAGE
        else:
            user_message = RATE_LIMIT_USER_MESSAGE
        return ErrorVerdict(
            kind=ErrorKind.QUOTA_OR_RATE_LIMIT,
            retryable=True,
            status=status,
            code=code,
            error_type=error_type,
            message=message,
            user_message=user_message,
            retry_after_seconds=_retry_after(err),
        )

    return ErrorVerdict(
        kind=ErrorKind.UPSTREAM_ERROR,
        retryable=False,
        status=status,
        code=code,
        error_type=error_type,
        message=message,
        user_message=f"An OpenAI API error occurred: {message}",
    )


def to_exception(verdict: ErrorVerdict) -> BridgeError:
    """Build the matching bridge exception for a verdict."""
    if verdict.kind == ErrorKind.QUOTA_OR_RATE_LIMIT:
        return QuotaOrRateLimit(verdict.message, verdict=verdict)
    if verdict.kind == ErrorKind.TRANSPORT_FAULT:
        return TransportFault(verdict.message, verdict=verdict)
    return UpstreamError(verdict.message, verdict=verdict)


def error_message(err: Any, conversation_id: Optional[str] = None) -> dict:
    """Client-facing ``error`` frame for an error."""
    verdict = classify_error(err)
    message = {
        "type": "error",
        "kind": verdict.kind.value,
        "retryable": verdict.retryable,
        "message": verdict.user_message,
    }
    if verdict.retry_after_seconds is not None:
        message["retry_after_seconds"] = verdict.retry_after_seconds
    if conversation_id:
        message["conversation_id"] = conversation_id
    return message
