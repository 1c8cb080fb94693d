"""
Push-to-talk audio capture controller.

State machine (MicState):
    IDLE -> REQUESTING -> RECORDING -> IDLE      (stop)
    any  -> ERROR                                (failure)
    ERROR is left only through reset() or an explicit new start()

Guarantees:
- At most one CaptureStream is held at a time.
- Every failure path releases whatever was acquired before reporting.
- stop() is synchronous, idempotent and never raises.
- A stop() issued while the device prompt is outstanding wins: the late
  grant is released immediately and no chunk is ever produced for it.

Cadence:
- The controller owns the chunk timer. Every CAPTURE_CHUNK_MS it drains
  the encoder and forwards non-empty buffers to on_chunk, in order.
- stop() forwards the encoder's final tail buffer (container trailer)
  the same way, as a background task.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from audio.device import (
    AudioDevice,
    CaptureStream,
    ChunkEncoder,
    DeviceAccessError,
    DeviceAccessFailure,
)
from constants import CAPTURE_CHUNK_S, CAPTURE_MIME_TYPE
from observability.logger import log_event
from observability.metrics import start_timer, stop_timer
from session.errors import CaptureError, CaptureFailure
from session.states import MicState


ChunkSink = Callable[[bytes], Awaitable[None]]
CaptureErrorSink = Callable[[CaptureError], None]
StateSink = Callable[[MicState], None]


_ACCESS_FAILURES: dict[DeviceAccessFailure, tuple[CaptureFailure, str | None]] = {
    DeviceAccessFailure.PERMISSION_DENIED: (CaptureFailure.PERMISSION_DENIED, None),
    DeviceAccessFailure.DEVICE_NOT_FOUND: (CaptureFailure.DEVICE_NOT_FOUND, None),
    DeviceAccessFailure.OTHER: (CaptureFailure.RECORDER_FAULT, "Unable to access microphone."),
}


class AudioCaptureController:
    """Owns the capture device and chunked encoder for one session."""

    def __init__(
        self,
        *,
        device: AudioDevice,
        on_chunk: ChunkSink | None = None,
        on_error: CaptureErrorSink | None = None,
        on_state_change: StateSink | None = None,
        chunk_interval_s: float = CAPTURE_CHUNK_S,
        mime_type: str = CAPTURE_MIME_TYPE,
    ) -> None:
        self._device = device
        self.on_chunk = on_chunk
        self.on_error = on_error
        self.on_state_change = on_state_change
        self._interval_s = chunk_interval_s
        self._mime_type = mime_type

        self._state = MicState.IDLE
        self._stream: CaptureStream | None = None
        self._encoder: ChunkEncoder | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._tail_tasks: set[asyncio.Task[None]] = set()

        # Bumped by every start()/stop(); stale continuations compare against it
        self._generation = 0
        self._recording_timer: str | None = None
        self._chunks_emitted = 0

    @property
    def state(self) -> MicState:
        return self._state

    @property
    def has_stream(self) -> bool:
        return self._stream is not None

    @property
    def chunks_emitted(self) -> int:
        return self._chunks_emitted

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Acquire the device and begin emitting chunks.

        No-op when already REQUESTING or RECORDING.

        Raises:
            CaptureError on permission denial, missing device, unsupported
            encoding or encoder failure. State is ERROR and all acquired
            resources are released by the time it propagates.
        """
        if self._state in (MicState.REQUESTING, MicState.RECORDING):
            return

        self._generation += 1
        gen = self._generation
        self._set_state(MicState.REQUESTING)

        try:
            stream = await self._device.request_access()
        except DeviceAccessError as e:
            if gen != self._generation:
                return
            reason, message = _ACCESS_FAILURES[e.reason]
            raise self._fail(reason, message=message, cause=e) from e
        except Exception as e:  # pylint: disable=broad-exception-caught
            if gen != self._generation:
                return
            raise self._fail(
                CaptureFailure.RECORDER_FAULT,
                message="Unable to access microphone.",
                cause=e,
            ) from e

        if gen != self._generation:
            # stop() ran while the prompt was open
            log_event({
                "event_type": "MIC_GRANT_DISCARDED",
                "device": stream.name,
            })
            _release_quietly(stream)
            return

        self._stream = stream

        if not self._device.supports_encoding(self._mime_type):
            raise self._fail(CaptureFailure.UNSUPPORTED_FORMAT)

        try:
            encoder = self._device.create_encoder(stream, self._mime_type)
            self._encoder = encoder
            encoder.start()
        except Exception as e:  # pylint: disable=broad-exception-caught
            raise self._fail(CaptureFailure.RECORDER_FAULT, cause=e) from e

        self._chunks_emitted = 0
        self._pump_task = asyncio.create_task(self._pump(gen, encoder))
        self._recording_timer = start_timer("mic_recording_duration")
        self._set_state(MicState.RECORDING)
        log_event({
            "event_type": "MIC_RECORDING_STARTED",
            "device": stream.name,
            "mime_type": self._mime_type,
            "chunk_interval_s": self._interval_s,
        })

    def stop(self) -> None:
        """
        Halt the encoder, release the device, return to IDLE.

        ERROR is preserved (sticky until reset()). Never raises.
        """
        self._generation += 1
        self._cancel_pump()
        self._halt_encoder(forward_tail=True)
        self._release_stream()
        self._stop_recording_timer("stopped")

        if self._state is not MicState.ERROR:
            self._set_state(MicState.IDLE)

    async def drain(self) -> None:
        """Wait for tail buffers already handed to on_chunk by stop()."""
        if self._tail_tasks:
            await asyncio.gather(*self._tail_tasks, return_exceptions=True)

    def reset(self) -> None:
        """External reset out of ERROR."""
        self.stop()
        if self._state is MicState.ERROR:
            self._set_state(MicState.IDLE)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _pump(self, gen: int, encoder: ChunkEncoder) -> None:
        try:
            while gen == self._generation:
                await asyncio.sleep(self._interval_s)
                if gen != self._generation:
                    return

                try:
                    chunk = encoder.flush()
                except Exception as e:  # pylint: disable=broad-exception-caught
                    self._fault(gen, e)
                    return

                if chunk:
                    await self._forward(chunk)
        except asyncio.CancelledError:
            return

    async def _forward(self, chunk: bytes) -> None:
        self._chunks_emitted += 1
        if self.on_chunk is not None:
            await self.on_chunk(chunk)

    def _fault(self, gen: int, exc: BaseException) -> None:
        """Runtime encoder/device failure after RECORDING."""
        if gen != self._generation:
            return
        err = self._fail(CaptureFailure.RECORDER_FAULT, cause=exc, pump_owned=True)
        if self.on_error is not None:
            self.on_error(err)

    def _fail(
        self,
        reason: CaptureFailure,
        *,
        message: str | None = None,
        cause: BaseException | None = None,
        pump_owned: bool = False,
    ) -> CaptureError:
        """Release everything, enter ERROR, and build the error to report."""
        self._generation += 1
        if not pump_owned:
            self._cancel_pump()
        else:
            self._pump_task = None
        self._halt_encoder(forward_tail=False)
        self._release_stream()
        self._stop_recording_timer("error")
        self._set_state(MicState.ERROR)

        err = CaptureError(reason, message)
        log_event({
            "event_type": "MIC_ERROR",
            "reason": reason.value,
            "message": str(err),
            "cause": repr(cause) if cause is not None else None,
        })
        return err

    def _cancel_pump(self) -> None:
        task = self._pump_task
        self._pump_task = None
        if task is not None and not task.done():
            task.cancel()

    def _halt_encoder(self, *, forward_tail: bool) -> None:
        encoder = self._encoder
        self._encoder = None
        if encoder is None:
            return

        tail = b""
        try:
            if encoder.active:
                encoder.stop()
                if forward_tail:
                    tail = encoder.flush()
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "MIC_ENCODER_STOP_FAILED",
                "error": repr(e),
            })

        if tail:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                log_event({
                    "event_type": "MIC_TAIL_DROPPED",
                    "bytes": len(tail),
                })
                return
            task = loop.create_task(self._forward(tail))
            self._tail_tasks.add(task)
            task.add_done_callback(self._tail_tasks.discard)

    def _release_stream(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is not None:
            _release_quietly(stream)

    def _stop_recording_timer(self, outcome: str) -> None:
        timer_id = self._recording_timer
        self._recording_timer = None
        if timer_id is not None:
            stop_timer(timer_id, outcome=outcome, details={"chunks": self._chunks_emitted})

    def _set_state(self, new_state: MicState) -> None:
        if new_state is self._state:
            return
        old = self._state
        self._state = new_state
        log_event({
            "event_type": "MIC_STATE_CHANGED",
            "from": old.value,
            "to": new_state.value,
        })
        if self.on_state_change is not None:
            self.on_state_change(new_state)


def _release_quietly(stream: CaptureStream) -> None:
    try:
        stream.release()
    except Exception as e:  # pylint: disable=broad-exception-caught
        log_event({
            "event_type": "MIC_RELEASE_FAILED",
            "device": stream.name,
            "error": repr(e),
        })
