"""
Session error taxonomy.

Every error carries a user-facing message (str(exc)) and, where the kind
has sub-categories, an enum `reason`.

Fatal kinds (surface to the error sink, SessionStatus -> ERROR):
- CredentialError
- TransportError with a pre-open reason (TIMEOUT, AUTH_REJECTED, NETWORK_FAILURE)
- CaptureError (all reasons)

Non-fatal kinds:
- TransportError(UNEXPECTED_CLOSE): recorded as a notice; the disconnect stops capture
- MessageParseError: logged and dropped
"""

from __future__ import annotations

from enum import Enum


class SessionError(Exception):
    """Base class for all session-layer errors."""


class CredentialError(SessionError):
    """Credential missing or blank. Blocks start entirely."""

    def __init__(self, message: str = "Deepgram API key missing. Set DEEPGRAM_API_KEY.") -> None:
        super().__init__(message)


# ---------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------

class ConnectionFailure(str, Enum):
    """
    Classification of a transport failure.

    TIMEOUT / AUTH_REJECTED / NETWORK_FAILURE:
        Failure before the socket ever opened. Rejects connect().

    UNEXPECTED_CLOSE:
        Abnormal close after a successful open. Never rejects anything.

    ABORTED:
        A pending attempt was cancelled locally (disconnect() or a newer
        attempt). Not a service failure.
    """

    TIMEOUT = "timeout"
    AUTH_REJECTED = "auth_rejected"
    NETWORK_FAILURE = "network_failure"
    UNEXPECTED_CLOSE = "unexpected_close"
    ABORTED = "aborted"


_TRANSPORT_MESSAGES: dict[ConnectionFailure, str] = {
    ConnectionFailure.TIMEOUT: "Deepgram connection timed out. Check your network connection.",
    ConnectionFailure.AUTH_REJECTED: "Deepgram API error: Invalid API key or unauthorized access.",
    ConnectionFailure.NETWORK_FAILURE: "Deepgram connection failed. Check your API key and network connection.",
    ConnectionFailure.UNEXPECTED_CLOSE: "Deepgram connection closed unexpectedly.",
    ConnectionFailure.ABORTED: "Deepgram connection attempt was cancelled.",
}


class TransportError(SessionError):
    """Failure of the transcription WebSocket."""

    def __init__(
        self,
        reason: ConnectionFailure,
        message: str | None = None,
        *,
        close_code: int | None = None,
    ) -> None:
        super().__init__(message or _TRANSPORT_MESSAGES[reason])
        self.reason = reason
        self.close_code = close_code

    @property
    def is_fatal(self) -> bool:
        return self.reason in (
            ConnectionFailure.TIMEOUT,
            ConnectionFailure.AUTH_REJECTED,
            ConnectionFailure.NETWORK_FAILURE,
        )


class MessageParseError(SessionError):
    """Inbound payload could not be interpreted. Never changes state."""


# ---------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------

class CaptureFailure(str, Enum):
    """Classification of a capture start or runtime failure."""

    PERMISSION_DENIED = "permission_denied"
    DEVICE_NOT_FOUND = "device_not_found"
    UNSUPPORTED_FORMAT = "unsupported_format"
    RECORDER_FAULT = "recorder_fault"


_CAPTURE_MESSAGES: dict[CaptureFailure, str] = {
    CaptureFailure.PERMISSION_DENIED: "Microphone permission denied.",
    CaptureFailure.DEVICE_NOT_FOUND: "No microphone found.",
    CaptureFailure.UNSUPPORTED_FORMAT: "Audio device does not support the required format (ogg/opus).",
    CaptureFailure.RECORDER_FAULT: "Recording error occurred.",
}


class CaptureError(SessionError):
    """Failure of the capture device or encoder."""

    def __init__(self, reason: CaptureFailure, message: str | None = None) -> None:
        super().__init__(message or _CAPTURE_MESSAGES[reason])
        self.reason = reason
