"""
Audio device contract.

This module defines the *interface only*: no session logic, no timers,
no transport.

Key invariants:
- request_access() either returns a live CaptureStream or raises
  DeviceAccessError with a categorized reason. It never returns a
  half-acquired stream.
- CaptureStream.release() is synchronous and idempotent.
- ChunkEncoder.flush() returns the encoded bytes produced since the
  previous flush (possibly empty). Encoder faults surface as exceptions
  from flush().
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum


class DeviceAccessFailure(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    DEVICE_NOT_FOUND = "device_not_found"
    OTHER = "other"


class DeviceAccessError(Exception):
    """Raised by AudioDevice.request_access()."""

    def __init__(self, reason: DeviceAccessFailure, message: str = "") -> None:
        super().__init__(message or reason.value)
        self.reason = reason


class CaptureStream(ABC):
    """A granted, open input device."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable device name."""
        raise NotImplementedError

    @abstractmethod
    def release(self) -> None:
        """
        Stop the device and release it.

        MUST be safe to call more than once and from any state.
        """
        raise NotImplementedError


class ChunkEncoder(ABC):
    """
    Encoder bound to one CaptureStream.

    Lifecycle: start() once, flush() repeatedly, stop() once.
    """

    @abstractmethod
    def start(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def flush(self) -> bytes:
        """
        Return encoded bytes accumulated since the previous flush.

        Raises:
            Exception on encoder/device fault. The caller treats any
            exception as a recorder fault.
        """
        raise NotImplementedError

    @abstractmethod
    def stop(self) -> None:
        """Halt encoding. Idempotent."""
        raise NotImplementedError

    @property
    @abstractmethod
    def active(self) -> bool:
        raise NotImplementedError


class AudioDevice(ABC):
    """
    Factory for capture streams and encoders.

    Implementations are responsible for:
    - Acquiring the physical input (and any OS permission prompt)
    - Reporting which container/codec MIME types they can produce
    - Building an encoder for a granted stream

    Non-responsibilities:
    - No chunk cadence (the capture controller owns the timer)
    - No knowledge of the transport
    """

    @abstractmethod
    async def request_access(self) -> CaptureStream:
        raise NotImplementedError

    @abstractmethod
    def supports_encoding(self, mime_type: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def create_encoder(self, stream: CaptureStream, mime_type: str) -> ChunkEncoder:
        raise NotImplementedError
