"""
State enumerations for a push-to-talk session.

Each enum has exactly one owner:
- ConnectionState -> TransportConnection
- MicState        -> AudioCaptureController
- SessionStatus   -> SessionCoordinator

SessionActivity is never stored. It is derived from the three owned
enums by derive_activity(), so combinations such as "mic recording while
the transport is idle" collapse into one well-defined composite value.
"""

from __future__ import annotations

from enum import Enum


class ConnectionState(str, Enum):
    """Lifecycle of the single transcription WebSocket."""

    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"


class MicState(str, Enum):
    """Lifecycle of the capture device + chunked encoder."""

    IDLE = "IDLE"
    REQUESTING = "REQUESTING"
    RECORDING = "RECORDING"
    ERROR = "ERROR"


class SessionStatus(str, Enum):
    """
    Coordinator sequencing variable.

    NOT equivalent to "recording": RECORDING is set optimistically before
    either sub-machine is active. Use SessionActivity for that question.
    """

    IDLE = "IDLE"
    READY = "READY"
    RECORDING = "RECORDING"
    STOPPING = "STOPPING"
    ERROR = "ERROR"


class SessionActivity(str, Enum):
    """Externally observable composite state."""

    IDLE = "IDLE"
    CONNECTING = "CONNECTING"   # start requested, transport not yet open
    CAPTURING = "CAPTURING"     # transport open, microphone not yet recording
    ACTIVE = "ACTIVE"           # both sub-machines active
    STOPPING = "STOPPING"
    ERROR = "ERROR"


def derive_activity(
    status: SessionStatus,
    connection: ConnectionState,
    mic: MicState,
) -> SessionActivity:
    """
    Collapse the three owned enums into one composite value.

    ACTIVE requires both sub-machines to report their active state and
    takes precedence over status. is_recording == (ACTIVE) and
    is_loading == (CONNECTING or CAPTURING) hold for every input.
    """
    if mic is MicState.RECORDING and connection is ConnectionState.CONNECTED:
        return SessionActivity.ACTIVE
    if status is SessionStatus.ERROR:
        return SessionActivity.ERROR
    if status is SessionStatus.STOPPING:
        return SessionActivity.STOPPING
    if status is SessionStatus.RECORDING:
        if connection is ConnectionState.CONNECTED:
            return SessionActivity.CAPTURING
        return SessionActivity.CONNECTING
    return SessionActivity.IDLE
