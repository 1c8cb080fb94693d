"""
Deepgram live-transcription wire helpers.

Client -> server:
    binary frames, Ogg/Opus audio, one per capture interval
    handshake query: model, language, punctuate=true, interim_results=true
    auth: WebSocket subprotocol pair ["token", <api key>]

Server -> client:
    JSON text frames
    {"channel": {"alternatives": [{"transcript": "..."}]}, "is_final": bool, ...}

Usage example:

    url = build_listen_url(base_url, model="general", language="en-US")
    ws = await connect(url, subprotocols=auth_subprotocols(api_key))

    event = parse_transcript_message(raw)   # may raise MessageParseError
    if event is not None:
        assembler.consume(event)

Pure functions only; no sockets here.
"""

from __future__ import annotations

import json
import urllib.parse
from typing import Any

from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus
from websockets.typing import Subprotocol

from constants import (
    WS_CLOSE_ABNORMAL,
    WS_CLOSE_NORMAL,
    WS_CLOSE_POLICY_VIOLATION,
    WS_CLOSE_PROTOCOL_ERROR,
)
from session.errors import ConnectionFailure, MessageParseError
from transcript.assembler import TranscriptEvent


# -------------------------
# Handshake
# -------------------------

def build_listen_url(base_url: str, *, model: str, language: str) -> str:
    params: dict[str, str] = {
        "model": model,
        "language": language,
        "punctuate": "true",
        "interim_results": "true",
    }
    return f"{base_url}?{urllib.parse.urlencode(params)}"


def auth_subprotocols(api_key: str) -> list[Subprotocol]:
    """Browser-style auth: the key travels as the second offered subprotocol."""
    return [Subprotocol("token"), Subprotocol(api_key)]


# -------------------------
# Failure classification
# -------------------------

def classify_close_code(code: int | None) -> ConnectionFailure | None:
    """
    Classify a close that happened before the socket ever opened.

    Returns None for a normal (1000) close, which is not a failure.
    """
    if code == WS_CLOSE_NORMAL:
        return None
    if code in (WS_CLOSE_PROTOCOL_ERROR, WS_CLOSE_POLICY_VIOLATION):
        return ConnectionFailure.AUTH_REJECTED
    # 1006 (no close frame) and every other code
    return ConnectionFailure.NETWORK_FAILURE


def classify_connect_failure(exc: BaseException) -> tuple[ConnectionFailure, int | None]:
    """
    Map an exception raised while opening the socket onto a failure kind.

    Returns (reason, close_code). close_code is only known when the peer
    closed the socket; otherwise it is None.
    """
    if isinstance(exc, TimeoutError):
        return ConnectionFailure.TIMEOUT, None

    if isinstance(exc, InvalidStatus):
        status = exc.response.status_code
        if status in (401, 403):
            return ConnectionFailure.AUTH_REJECTED, None
        return ConnectionFailure.NETWORK_FAILURE, None

    if isinstance(exc, ConnectionClosed):
        code = exc.rcvd.code if exc.rcvd is not None else WS_CLOSE_ABNORMAL
        return classify_close_code(code) or ConnectionFailure.NETWORK_FAILURE, code

    if isinstance(exc, InvalidHandshake):
        # Subprotocol negotiation / malformed upgrade: the server refused our auth
        return ConnectionFailure.AUTH_REJECTED, WS_CLOSE_PROTOCOL_ERROR

    return ConnectionFailure.NETWORK_FAILURE, None


def close_message(reason: ConnectionFailure, code: int | None) -> str | None:
    """User-facing text for a pre-open failure, including unusual close codes."""
    if reason is ConnectionFailure.NETWORK_FAILURE and code not in (None, WS_CLOSE_ABNORMAL):
        return f"Deepgram connection failed (code: {code}). Check your API key."
    if reason is ConnectionFailure.AUTH_REJECTED and code == WS_CLOSE_PROTOCOL_ERROR:
        return "Deepgram API error: Invalid protocol or authentication."
    return None


# -------------------------
# Inbound messages
# -------------------------

def parse_transcript_message(raw: str | bytes) -> TranscriptEvent | None:
    """
    Parse one inbound frame.

    Returns:
        TranscriptEvent, or None when the frame carries no transcript text
        (metadata messages, empty transcripts).

    Raises:
        MessageParseError if the frame is not JSON or has the wrong shape.
    """
    if isinstance(raw, bytes):
        raise MessageParseError(f"unexpected binary frame ({len(raw)} bytes)")

    try:
        data: Any = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MessageParseError(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MessageParseError(f"expected JSON object, got {type(data).__name__}")

    channel = data.get("channel")
    if channel is None:
        return None
    if not isinstance(channel, dict):
        raise MessageParseError("'channel' is not an object")

    alternatives = channel.get("alternatives")
    if alternatives is None or alternatives == []:
        return None
    if not isinstance(alternatives, list) or not isinstance(alternatives[0], dict):
        raise MessageParseError("'channel.alternatives' is not a list of objects")

    transcript = alternatives[0].get("transcript")
    if transcript is None:
        return None
    if not isinstance(transcript, str):
        raise MessageParseError("'transcript' is not a string")
    if not transcript:
        return None

    is_final = data.get("is_final", False)
    if not isinstance(is_final, bool):
        raise MessageParseError("'is_final' is not a boolean")

    return TranscriptEvent(is_final=is_final, text=transcript)
