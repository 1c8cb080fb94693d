"""
Push-to-talk session coordinator.

Responsibilities:
- Sequence start (credential check -> connect -> capture) and stop
  (capture stop -> grace delay -> disconnect)
- Own SessionStatus and the single user-visible error sink
- Route transcript events into the assembler
- Recover from partial failure: a transport that dies mid-recording
  stops the microphone; a capture fault closes the transport
- Publish a SessionSnapshot to listeners after every change

Cross-component reads:
- Callbacks registered once on the transport/capture read
  `capture.state` / `transport.state` at call time. Nothing is captured
  at subscription time, so an intervening event-loop turn can never
  leave a callback acting on stale state.

Sequencing epochs:
- Every start/stop bumps `_epoch`. A suspended start or stop that
  resumes under a newer epoch has been superseded and exits without
  touching state.

Non-responsibilities:
- No WebSocket or device details
- No rendering, key bindings or clipboard
"""

from __future__ import annotations

import asyncio
from typing import Callable
from uuid import uuid4

from adapters.asr.deepgram_realtime import TransportConnection
from audio.capture import AudioCaptureController
from audio.device import AudioDevice
from config import AppConfig, is_valid_api_key
from constants import STOP_GRACE_DELAY_S
from observability.logger import log_event
from session.errors import CaptureError, CredentialError, SessionError, TransportError
from session.snapshot import SessionSnapshot
from session.states import (
    ConnectionState,
    MicState,
    SessionActivity,
    SessionStatus,
    derive_activity,
)
from transcript.assembler import TranscriptAssembler, TranscriptEvent


SnapshotListener = Callable[[SessionSnapshot], None]


def _new_session_id() -> str:
    return f"sess_{uuid4().hex[:12]}"


class SessionCoordinator:
    """
    One coordinator == one push-to-talk session for the process lifetime.

    External operations:
    - toggle(): start when idle, stop when recording or loading
    - start() / stop(): the two halves of toggle()
    - edit_final_text(), clear_transcript(): manual transcript edits
    - dismiss_error(): clear the error sink
    - subscribe(): snapshot listeners
    - shutdown(): release everything
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        transport: TransportConnection,
        capture: AudioCaptureController,
        assembler: TranscriptAssembler | None = None,
        grace_delay_s: float = STOP_GRACE_DELAY_S,
    ) -> None:
        self.session_id = _new_session_id()
        self._api_key = api_key
        self._transport = transport
        self._capture = capture
        self._assembler = assembler or TranscriptAssembler()
        self._grace_delay_s = grace_delay_s

        self._status = SessionStatus.IDLE
        self._error: str | None = None
        self._error_id = 0
        self._notice: str | None = None

        self._epoch = 0
        self._start_task: asyncio.Task[None] | None = None
        # True until the event loop has turned once since the start began
        self._start_turn_open = False
        self._listeners: list[SnapshotListener] = []

        # Wiring: the coordinator is the only subscriber of both machines
        transport.on_transcript = self._on_transcript
        transport.on_error = self._on_transport_error
        transport.on_disconnect = self._on_transport_disconnect
        transport.on_state_change = lambda _state: self._notify()

        capture.on_chunk = transport.send
        capture.on_error = self._on_capture_error
        capture.on_state_change = lambda _state: self._notify()

    @classmethod
    def from_config(cls, config: AppConfig, *, device: AudioDevice) -> SessionCoordinator:
        """Build transport, capture and coordinator from application config."""
        transport = TransportConnection(
            api_key=config.deepgram_api_key or "",
            model=config.deepgram_model,
            language=config.deepgram_language,
            url=config.deepgram_url,
        )
        capture = AudioCaptureController(device=device)
        return cls(
            api_key=config.deepgram_api_key,
            transport=transport,
            capture=capture,
        )

    # ------------------------------------------------------------------
    # Derived signals (computed, never stored)
    # ------------------------------------------------------------------

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def is_recording(self) -> bool:
        return (
            self._capture.state is MicState.RECORDING
            and self._transport.state is ConnectionState.CONNECTED
        )

    @property
    def is_loading(self) -> bool:
        return self._status is SessionStatus.RECORDING and not self.is_recording

    @property
    def activity(self) -> SessionActivity:
        return derive_activity(self._status, self._transport.state, self._capture.state)

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def assembler(self) -> TranscriptAssembler:
        return self._assembler

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.session_id,
            status=self._status,
            activity=self.activity,
            connection=self._transport.state,
            mic=self._capture.state,
            is_recording=self.is_recording,
            is_loading=self.is_loading,
            final_text=self._assembler.final_text,
            live_text=self._assembler.live_text,
            error=self._error,
            error_id=self._error_id,
            notice=self._notice,
        )

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    async def toggle(self) -> None:
        """
        Push-to-talk entry point.

        Recording or loading -> stop sequence. Otherwise -> start sequence.
        Ignored while an error is displayed.

        A toggle issued in the same event-loop turn as the start it would
        stop (e.g. a double key press delivered in one batch) joins that
        start instead, so the pair acquires one socket and one stream.
        """
        if self._status is SessionStatus.ERROR:
            log_event({
                "event_type": "SESSION_TOGGLE_IGNORED",
                "session_id": self.session_id,
                "reason": "error_displayed",
            })
            return

        if self._start_turn_open:
            await self.start()
        elif self.is_recording or self.is_loading:
            await self.stop()
        else:
            await self.start()

    async def start(self) -> None:
        """
        Start sequence. Single-flight: concurrent callers share one attempt.

        Failures never propagate: they land in the error sink.
        """
        task = self._start_task
        if task is not None and not task.done():
            await asyncio.shield(task)
            return

        if not is_valid_api_key(self._api_key):
            # Fail fast: zero connection attempts
            self._report_error(CredentialError())
            return

        self._epoch += 1
        self._notice = None
        self._set_status(SessionStatus.RECORDING)

        task = asyncio.create_task(self._run_start(self._epoch))
        self._start_task = task
        self._start_turn_open = True
        asyncio.get_running_loop().call_soon(self._close_start_turn)
        await asyncio.shield(task)

    def _close_start_turn(self) -> None:
        self._start_turn_open = False

    async def _run_start(self, epoch: int) -> None:
        try:
            await self._transport.connect()
            if epoch != self._epoch:
                return
            if self._transport.state is not ConnectionState.CONNECTED:
                # Closed between handshake and resumption; the disconnect
                # handler has already settled the status
                log_event({
                    "event_type": "SESSION_START_ABANDONED",
                    "session_id": self.session_id,
                    "connection": self._transport.state.value,
                })
                return
            await self._capture.start()
        except SessionError as e:
            if epoch != self._epoch:
                log_event({
                    "event_type": "SESSION_START_SUPERSEDED",
                    "session_id": self.session_id,
                    "error": str(e),
                })
                return
            self._report_error(e)
            self._capture.stop()
            if self._transport.state is not ConnectionState.IDLE:
                self._transport.disconnect()
            return

        if epoch == self._epoch:
            log_event({
                "event_type": "SESSION_RECORDING",
                "session_id": self.session_id,
                "activity": self.activity.value,
            })

    async def stop(self) -> None:
        """
        Stop sequence: capture off now, socket closed after the grace delay.

        The delay lets a chunk already handed to the transport (including
        the encoder's final tail) finish transmitting.
        """
        if self._status is SessionStatus.STOPPING:
            return

        self._epoch += 1
        epoch = self._epoch
        self._set_status(SessionStatus.STOPPING)
        self._capture.stop()

        await asyncio.sleep(self._grace_delay_s)
        if epoch != self._epoch:
            # A newer start took over during the grace window
            return

        if self._transport.state is not ConnectionState.IDLE:
            self._transport.disconnect()
        if self._status is SessionStatus.STOPPING:
            self._set_status(SessionStatus.READY)

    async def shutdown(self) -> None:
        """Release capture and transport unconditionally (process exit)."""
        self._epoch += 1
        self._capture.stop()
        # Let the encoder tail reach the socket before it closes
        await self._capture.drain()
        await self._transport.shutdown()
        log_event({
            "event_type": "SESSION_SHUTDOWN",
            "session_id": self.session_id,
        })

    # ------------------------------------------------------------------
    # Transcript + error sink (UI collaborator operations)
    # ------------------------------------------------------------------

    def edit_final_text(self, text: str) -> None:
        self._assembler.edit_final_text(text)
        self._notify()

    def clear_transcript(self) -> None:
        self._assembler.clear()
        self._notify()

    def dismiss_error(self, error_id: int | None = None) -> bool:
        """
        Clear the displayed error.

        Returns False (and changes nothing) when error_id refers to an
        older error than the one currently held.
        """
        if error_id is not None and error_id != self._error_id:
            return False

        self._error = None
        if self._capture.state is MicState.ERROR:
            self._capture.reset()
        if self._status is SessionStatus.ERROR:
            self._set_status(SessionStatus.IDLE)
        else:
            self._notify()
        return True

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a snapshot listener. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Callbacks from the sub-machines
    # ------------------------------------------------------------------

    def _on_transcript(self, event: TranscriptEvent) -> None:
        self._assembler.consume(event)
        self._notify()

    def _on_transport_error(self, err: TransportError) -> None:
        if err.is_fatal:
            self._report_error(err)
            return
        self._notice = str(err)
        log_event({
            "event_type": "SESSION_TRANSPORT_NOTICE",
            "session_id": self.session_id,
            "reason": err.reason.value,
            "close_code": err.close_code,
        })
        self._notify()

    def _on_transport_disconnect(self) -> None:
        # Live read: the mic may have changed since this callback was registered
        mic = self._capture.state
        if self._status is SessionStatus.RECORDING or mic in (MicState.REQUESTING, MicState.RECORDING):
            # Supersedes a start still suspended between connect and capture
            self._epoch += 1
            self._capture.stop()

        log_event({
            "event_type": "SESSION_TRANSPORT_DISCONNECTED",
            "session_id": self.session_id,
            "mic_state": mic.value,
            "status": self._status.value,
        })

        if self._status is not SessionStatus.ERROR:
            self._set_status(SessionStatus.READY)

    def _on_capture_error(self, err: CaptureError) -> None:
        self._epoch += 1
        self._report_error(err)
        if self._transport.state is not ConnectionState.IDLE:
            self._transport.disconnect()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _report_error(self, err: SessionError) -> None:
        self._error = str(err)
        self._error_id += 1
        log_event({
            "event_type": "SESSION_ERROR",
            "session_id": self.session_id,
            "error_id": self._error_id,
            "kind": type(err).__name__,
            "reason": getattr(getattr(err, "reason", None), "value", None),
            "message": self._error,
        })
        if self._status is SessionStatus.ERROR:
            self._notify()
        else:
            self._set_status(SessionStatus.ERROR)

    def _set_status(self, new_status: SessionStatus) -> None:
        if new_status is not self._status:
            old = self._status
            self._status = new_status
            log_event({
                "event_type": "SESSION_STATUS_CHANGED",
                "session_id": self.session_id,
                "from": old.value,
                "to": new_status.value,
            })
        self._notify()

    def _notify(self) -> None:
        if not self._listeners:
            return
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception as e:  # pylint: disable=broad-exception-caught
                log_event({
                    "event_type": "SNAPSHOT_LISTENER_FAILED",
                    "session_id": self.session_id,
                    "error": repr(e),
                })
