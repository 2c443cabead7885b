"""
Error taxonomy for call commands, sessions and the event stream.

Every error carries a stable code, a human message and the call id it belongs
to, so a failure on one call can be reported without unwinding sibling calls.
"""
import asyncio
from typing import Any, Dict, Optional

import aiohttp


class ErrorCode:
    """Stable error codes used in outcome and error-sink payloads."""

    COMMAND_FAILED = "COMMAND_FAILED"
    UNSUPPORTED_SOURCE = "UNSUPPORTED_SOURCE"
    SESSION_CREATE_ERROR = "SESSION_CREATE_ERROR"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    STREAM_FAULT = "STREAM_FAULT"
    MALFORMED_FRAME = "MALFORMED_FRAME"
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_CONNECTED = "NOT_CONNECTED"
    INVALID_TOOL_RESULT = "INVALID_TOOL_RESULT"


class FailureKind:
    """Stable categories for CommandFailed.kind."""

    AUTH_FAILED = "auth_failed"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    REJECTED = "rejected"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    INVALID_RESPONSE = "invalid_response"


class VoiceNetError(Exception):
    """Base class; subclasses pin `code`."""

    code = "VOICENET_ERROR"

    def __init__(self, message: str, call_id: Optional[str] = None, **details: Any):
        super().__init__(message)
        self.message = message
        self.call_id = call_id
        self.details = details

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "callId": self.call_id,
        }
        payload.update(self.details)
        return payload


class CommandFailed(VoiceNetError):
    """Transport or backend rejection of a command."""

    code = ErrorCode.COMMAND_FAILED

    def __init__(self, kind: str, message: str, call_id: Optional[str] = None,
                 status: Optional[int] = None):
        super().__init__(message, call_id, kind=kind)
        self.kind = kind
        self.status = status
        if status is not None:
            self.details["httpStatus"] = status


class UnsupportedSource(VoiceNetError):
    """Play source that the client does not support yet (binary upload)."""

    code = ErrorCode.UNSUPPORTED_SOURCE


class SessionCreateError(VoiceNetError):
    code = ErrorCode.SESSION_CREATE_ERROR


class SessionNotFound(VoiceNetError):
    """Tool result submitted for a call without a registered session."""

    code = ErrorCode.SESSION_NOT_FOUND


class StreamFault(VoiceNetError):
    """Transport error on the event connection; terminal for that session."""

    code = ErrorCode.STREAM_FAULT


class MalformedFrame(VoiceNetError):
    """Inbound frame that does not decode; recovered locally."""

    code = ErrorCode.MALFORMED_FRAME


class Unauthorized(VoiceNetError):
    """Webhook signature or timestamp mismatch."""

    code = ErrorCode.UNAUTHORIZED


class NotConnected(VoiceNetError):
    """Outbound frame while the stream is not streaming."""

    code = ErrorCode.NOT_CONNECTED


class InvalidToolResult(VoiceNetError):
    code = ErrorCode.INVALID_TOOL_RESULT


def classify_status(status: int) -> str:
    """Map an HTTP status from the backend to a FailureKind."""
    if status in (401, 403):
        return FailureKind.AUTH_FAILED
    if status == 404:
        return FailureKind.NOT_FOUND
    if status == 429:
        return FailureKind.RATE_LIMITED
    if status >= 500:
        return FailureKind.BACKEND_UNAVAILABLE
    return FailureKind.REJECTED


def classify_exception(error: BaseException) -> str:
    """
    Map a transport exception to a FailureKind.
    Never raises; unknown errors count as network errors.
    """
    if isinstance(error, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return FailureKind.TIMEOUT
    # ContentTypeError subclasses ClientResponseError
    if isinstance(error, (aiohttp.ContentTypeError, ValueError)):
        return FailureKind.INVALID_RESPONSE
    if isinstance(error, aiohttp.ClientResponseError):
        return classify_status(error.status)
    return FailureKind.NETWORK_ERROR


def describe_exception(error: BaseException) -> str:
    """Human message for a transport exception, without leaking credentials."""
    if isinstance(error, aiohttp.ClientResponseError):
        # str() on these needs request_info; status and message are enough
        return f"{error.status} {error.message}".strip()
    if isinstance(error, asyncio.TimeoutError):
        return "request timed out"
    detail = str(error) or type(error).__name__
    lowered = detail.lower()
    if "apikey" in lowered or "api_key" in lowered or "secret" in lowered:
        return "[redacted: potential secret]"
    return detail
