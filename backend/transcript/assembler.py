"""
Transcript assembly.

Pure state, no IO:
- final_text grows only by space-joined append of final events, or by an
  explicit user overwrite
- live_text holds the latest interim event since the last final event
  (replaced, never accumulated) and is cleared by every final event
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TranscriptEvent:
    """One incremental result from the transcription service."""

    is_final: bool
    text: str


@dataclass(frozen=True)
class TranscriptBuffer:
    final_text: str = ""
    live_text: str = ""


class TranscriptAssembler:
    """Accumulates final text and holds the current live (interim) text."""

    def __init__(self) -> None:
        self._final_text = ""
        self._live_text = ""

    @property
    def final_text(self) -> str:
        return self._final_text

    @property
    def live_text(self) -> str:
        return self._live_text

    @property
    def buffer(self) -> TranscriptBuffer:
        return TranscriptBuffer(final_text=self._final_text, live_text=self._live_text)

    def consume(self, event: TranscriptEvent) -> None:
        if event.is_final:
            self._final_text = (
                f"{self._final_text} {event.text}" if self._final_text else event.text
            )
            self._live_text = ""
        else:
            self._live_text = event.text

    def edit_final_text(self, text: str) -> None:
        """Manual correction: replace the whole final buffer. live_text is kept."""
        self._final_text = text

    def clear(self) -> None:
        self._final_text = ""
        self._live_text = ""
