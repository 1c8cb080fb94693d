"""
Read model handed to UI collaborators.

Rules:
- Pure data, immutable.
- Built by the coordinator after every change; never mutated afterwards.
- Carries derived signals precomputed so renderers never re-derive them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from session.states import ConnectionState, MicState, SessionActivity, SessionStatus


@dataclass(frozen=True)
class SessionSnapshot:
    """Point-in-time view of one push-to-talk session."""

    session_id: str
    status: SessionStatus
    activity: SessionActivity
    connection: ConnectionState
    mic: MicState

    is_recording: bool
    is_loading: bool

    final_text: str
    live_text: str

    # Fatal error sink (one dismissible message)
    error: str | None = None
    error_id: int = 0

    # Last non-fatal transport problem (e.g. unexpected close)
    notice: str | None = None

    def to_message(self) -> dict[str, Any]:
        """JSON-ready SESSION_SNAPSHOT message."""
        return {
            "type": "SESSION_SNAPSHOT",
            "session_id": self.session_id,
            "status": self.status.value,
            "activity": self.activity.value,
            "connection": self.connection.value,
            "mic": self.mic.value,
            "is_recording": self.is_recording,
            "is_loading": self.is_loading,
            "final_text": self.final_text,
            "live_text": self.live_text,
            "error": self.error,
            "error_id": self.error_id,
            "notice": self.notice,
        }
