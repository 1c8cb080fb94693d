"""
BEHAVIORAL CONSTANTS
--------------------
Single source of truth for every timing and format value in the system.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Other modules MUST import from this file.
"""

from __future__ import annotations

from typing import Final

# =============================================================================
# Audio capture
# =============================================================================

AUDIO_SAMPLE_RATE_HZ: Final[int] = 16_000
AUDIO_CHANNELS: Final[int] = 1

# Encoder emits one binary buffer per interval while recording
CAPTURE_CHUNK_MS: Final[int] = 250
CAPTURE_CHUNK_S: Final[float] = CAPTURE_CHUNK_MS / 1000.0

# Container/codec the transcription service accepts without extra params
CAPTURE_MIME_TYPE: Final[str] = "audio/ogg;codecs=opus"

# =============================================================================
# Transport
# =============================================================================

DEEPGRAM_LISTEN_URL: Final[str] = "wss://api.deepgram.com/v1/listen"
DEEPGRAM_DEFAULT_MODEL: Final[str] = "general"
DEEPGRAM_DEFAULT_LANGUAGE: Final[str] = "en-US"

CONNECT_TIMEOUT_S: Final[float] = 10.0

# Inbound messages are small JSON documents
WS_MAX_MESSAGE_BYTES: Final[int] = 2**20

# =============================================================================
# WebSocket close codes (RFC 6455)
# =============================================================================

WS_CLOSE_NORMAL: Final[int] = 1000
WS_CLOSE_PROTOCOL_ERROR: Final[int] = 1002
WS_CLOSE_ABNORMAL: Final[int] = 1006
WS_CLOSE_POLICY_VIOLATION: Final[int] = 1008

# =============================================================================
# Session
# =============================================================================

# Delay between stopping capture and closing the socket so an already
# emitted chunk can finish transmitting
STOP_GRACE_DELAY_MS: Final[int] = 200
STOP_GRACE_DELAY_S: Final[float] = STOP_GRACE_DELAY_MS / 1000.0
