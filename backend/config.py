"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide a typed, immutable config object

Non-responsibilities:
- No session logic
- No protocol constants
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from constants import (
    DEEPGRAM_DEFAULT_LANGUAGE,
    DEEPGRAM_DEFAULT_MODEL,
    DEEPGRAM_LISTEN_URL,
)


def is_valid_api_key(key: str | None) -> bool:
    """True when the credential is a non-blank string."""
    return isinstance(key, str) and len(key.strip()) > 0


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to the server app factory and the session coordinator.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str
    log_level: str

    # ------------------------------------------------------------------
    # Transcription service
    # ------------------------------------------------------------------

    deepgram_api_key: str | None
    deepgram_model: str = DEEPGRAM_DEFAULT_MODEL
    deepgram_language: str = DEEPGRAM_DEFAULT_LANGUAGE
    deepgram_url: str = DEEPGRAM_LISTEN_URL

    # ------------------------------------------------------------------
    # Audio
    # ------------------------------------------------------------------

    # PortAudio device index or name substring; None selects the default input
    audio_input_device: int | str | None = None

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    enable_json_logs: bool = True

    @property
    def has_credential(self) -> bool:
        return is_valid_api_key(self.deepgram_api_key)

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        A missing DEEPGRAM_API_KEY is not an error here; the session
        coordinator refuses to start without one.
        """
        return AppConfig(
            env=os.environ.get("ENV", "dev"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),

            deepgram_api_key=os.environ.get("DEEPGRAM_API_KEY"),
            deepgram_model=os.environ.get("DEEPGRAM_MODEL", DEEPGRAM_DEFAULT_MODEL),
            deepgram_language=os.environ.get("DEEPGRAM_LANGUAGE", DEEPGRAM_DEFAULT_LANGUAGE),
            deepgram_url=os.environ.get("DEEPGRAM_URL", DEEPGRAM_LISTEN_URL),

            audio_input_device=_parse_device(os.environ.get("AUDIO_INPUT_DEVICE")),

            enable_json_logs=os.environ.get("ENABLE_JSON_LOGS", "1") == "1",
        )


def _parse_device(raw: str | None) -> int | str | None:
    if raw is None or not raw.strip():
        return None
    raw = raw.strip()
    return int(raw) if raw.isdigit() else raw
