"""
Local microphone device (PortAudio via sounddevice) with a streaming
Ogg/Opus encoder (libsndfile via soundfile).

Threading:
- sounddevice delivers float32 blocks on the PortAudio thread.
- The encoder writes those blocks into an in-memory Ogg stream under a
  lock; flush() on the event loop thread returns the bytes appended
  since the previous flush.
- Blocks arriving before an encoder is attached are discarded.

sounddevice is imported lazily: a host without PortAudio can still import
this module and reports DEVICE_NOT_FOUND on request_access().
"""

from __future__ import annotations

import asyncio
import io
import threading
from typing import TYPE_CHECKING, Any

import numpy as np
import soundfile as sf

from audio.device import (
    AudioDevice,
    CaptureStream,
    ChunkEncoder,
    DeviceAccessError,
    DeviceAccessFailure,
)
from constants import AUDIO_CHANNELS, AUDIO_SAMPLE_RATE_HZ, CAPTURE_MIME_TYPE
from observability.logger import log_event

if TYPE_CHECKING:
    import sounddevice as sd


# Blocks of 20 ms keep callback latency low without flooding the lock
_BLOCK_FRAMES = AUDIO_SAMPLE_RATE_HZ // 50

_PERMISSION_MARKERS = ("permission", "denied", "not authorized", "not permitted")
_NOT_FOUND_MARKERS = ("invalid device", "no default", "device unavailable", "no input device", "no such device")


def classify_portaudio_error(exc: BaseException) -> DeviceAccessFailure:
    """Map a PortAudio / device lookup failure onto a categorized reason."""
    text = str(exc).lower()
    if any(m in text for m in _PERMISSION_MARKERS):
        return DeviceAccessFailure.PERMISSION_DENIED
    if isinstance(exc, ValueError) or any(m in text for m in _NOT_FOUND_MARKERS):
        return DeviceAccessFailure.DEVICE_NOT_FOUND
    return DeviceAccessFailure.OTHER


class _OggOpusEncoder(ChunkEncoder):
    """Incremental Ogg/Opus writer over an in-memory buffer."""

    def __init__(self, *, samplerate: int, channels: int) -> None:
        self._samplerate = samplerate
        self._channels = channels
        self._lock = threading.Lock()
        self._buf = io.BytesIO()
        self._file: sf.SoundFile | None = None
        self._read_offset = 0
        self._fault: BaseException | None = None

    @property
    def active(self) -> bool:
        return self._file is not None

    def start(self) -> None:
        with self._lock:
            self._file = sf.SoundFile(
                self._buf,
                mode="w",
                samplerate=self._samplerate,
                channels=self._channels,
                format="OGG",
                subtype="OPUS",
            )

    def write(self, block: np.ndarray) -> None:
        """Called from the PortAudio thread."""
        with self._lock:
            if self._file is None or self._fault is not None:
                return
            try:
                self._file.write(block)
            except Exception as e:  # pylint: disable=broad-exception-caught
                # Surfaced on the loop thread by the next flush()
                self._fault = e

    def flush(self) -> bytes:
        with self._lock:
            if self._fault is not None:
                raise RuntimeError(f"opus encoder failed: {self._fault!r}") from self._fault
            if self._file is not None:
                self._file.flush()
            view = self._buf.getbuffer()
            try:
                data = bytes(view[self._read_offset:])
            finally:
                view.release()
            self._read_offset += len(data)
            return data

    def stop(self) -> None:
        with self._lock:
            f = self._file
            self._file = None
            if f is not None:
                # Writes the final Ogg page; picked up by one last flush()
                f.close()


class _MicrophoneStream(CaptureStream):
    """A started sounddevice.InputStream plus an optional encoder sink."""

    def __init__(self, name: str) -> None:
        self._name = name
        self._stream: sd.InputStream | None = None
        self._sink: _OggOpusEncoder | None = None
        self._released = False

    @property
    def name(self) -> str:
        return self._name

    def attach(self, stream: sd.InputStream) -> None:
        self._stream = stream

    def set_sink(self, sink: _OggOpusEncoder | None) -> None:
        self._sink = sink

    def callback(self, indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        # pylint: disable=unused-argument
        if status:
            log_event({
                "event_type": "MIC_STREAM_STATUS",
                "status": str(status),
            })
        sink = self._sink
        if sink is not None:
            sink.write(indata.copy())

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._sink = None
        stream = self._stream
        self._stream = None
        if stream is not None:
            stream.stop()
            stream.close()


class SoundDeviceMicrophone(AudioDevice):
    """AudioDevice backed by the host's PortAudio input."""

    def __init__(
        self,
        *,
        device: int | str | None = None,
        samplerate: int = AUDIO_SAMPLE_RATE_HZ,
        channels: int = AUDIO_CHANNELS,
    ) -> None:
        self._device = device
        self._samplerate = samplerate
        self._channels = channels

    async def request_access(self) -> CaptureStream:
        return await asyncio.to_thread(self._open)

    def _open(self) -> _MicrophoneStream:
        try:
            import sounddevice as sd  # pylint: disable=import-outside-toplevel
        except OSError as e:
            raise DeviceAccessError(
                DeviceAccessFailure.DEVICE_NOT_FOUND,
                f"PortAudio library not available: {e}",
            ) from e

        try:
            info = sd.query_devices(self._device, kind="input")
        except (ValueError, sd.PortAudioError) as e:
            raise DeviceAccessError(classify_portaudio_error(e), str(e)) from e

        mic = _MicrophoneStream(name=str(info.get("name", "Microphone")))
        stream: sd.InputStream | None = None
        try:
            stream = sd.InputStream(
                samplerate=self._samplerate,
                channels=self._channels,
                dtype="float32",
                device=self._device,
                blocksize=_BLOCK_FRAMES,
                callback=mic.callback,
            )
            stream.start()
        except (ValueError, sd.PortAudioError) as e:
            if stream is not None:
                stream.close()
            raise DeviceAccessError(classify_portaudio_error(e), str(e)) from e

        mic.attach(stream)
        log_event({
            "event_type": "MIC_DEVICE_OPENED",
            "device": mic.name,
            "samplerate": self._samplerate,
            "channels": self._channels,
        })
        return mic

    def supports_encoding(self, mime_type: str) -> bool:
        if mime_type != CAPTURE_MIME_TYPE:
            return False
        return "OPUS" in sf.available_subtypes("OGG")

    def create_encoder(self, stream: CaptureStream, mime_type: str) -> ChunkEncoder:
        if not isinstance(stream, _MicrophoneStream):
            raise TypeError(f"stream not produced by this device: {stream!r}")
        if not self.supports_encoding(mime_type):
            raise ValueError(f"unsupported encoding: {mime_type}")

        encoder = _OggOpusEncoder(samplerate=self._samplerate, channels=self._channels)
        stream.set_sink(encoder)
        return encoder
