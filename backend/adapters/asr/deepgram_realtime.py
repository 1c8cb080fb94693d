"""
Deepgram realtime transport (push-to-talk).

Core model:
- At most ONE WebSocket object exists at a time. Opening a new one first
  detaches and closes any stale predecessor.
- connect() is single-flight: concurrent callers share one attempt via a
  shared future that is resolved exactly once.
- send() never raises and never buffers. Frames offered while not
  CONNECTED are dropped.
- A dropped session is never retried here.

Close classification:
- Failure before the socket opened -> TransportError(TIMEOUT | AUTH_REJECTED
  | NETWORK_FAILURE), rejects the pending connect(), state ERROR.
- Close after the socket opened -> state IDLE. An abnormal close also
  reports a non-fatal TransportError(UNEXPECTED_CLOSE). Any close the
  transport did not initiate itself notifies on_disconnect.
- A close requested through disconnect() is silent.

Design constraints:
- Transport must not touch capture or session state.
- Transport must not know about the UI; it only calls the sinks it was given.
"""

from __future__ import annotations

import asyncio
from typing import Callable

from websockets.asyncio.client import ClientConnection, connect as ws_connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedError

from constants import (
    CONNECT_TIMEOUT_S,
    DEEPGRAM_DEFAULT_LANGUAGE,
    DEEPGRAM_DEFAULT_MODEL,
    DEEPGRAM_LISTEN_URL,
    WS_CLOSE_ABNORMAL,
    WS_MAX_MESSAGE_BYTES,
)
from observability.logger import log_event
from observability.metrics import timed
from protocol.deepgram import (
    auth_subprotocols,
    build_listen_url,
    classify_connect_failure,
    close_message,
    parse_transcript_message,
)
from session.errors import ConnectionFailure, MessageParseError, TransportError
from session.states import ConnectionState
from transcript.assembler import TranscriptEvent


TranscriptSink = Callable[[TranscriptEvent], None]
ErrorSink = Callable[[TransportError], None]
DisconnectSink = Callable[[], None]
StateSink = Callable[[ConnectionState], None]


def _retrieve_exception(fut: asyncio.Future[None]) -> None:
    # Attempts may fail after every awaiting caller has gone away
    if not fut.cancelled():
        fut.exception()


class TransportConnection:
    """
    Owns the single persistent connection to the transcription service.

    Public interface:
    - connect(): open (or join the in-flight open of) the socket
    - disconnect(): close unconditionally, abort a pending attempt
    - send(chunk): best-effort binary transmit
    - state: current ConnectionState (live read)
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = DEEPGRAM_DEFAULT_MODEL,
        language: str = DEEPGRAM_DEFAULT_LANGUAGE,
        url: str = DEEPGRAM_LISTEN_URL,
        connect_timeout_s: float = CONNECT_TIMEOUT_S,
        on_transcript: TranscriptSink | None = None,
        on_error: ErrorSink | None = None,
        on_disconnect: DisconnectSink | None = None,
        on_state_change: StateSink | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._language = language
        self._base_url = url
        self._connect_timeout_s = connect_timeout_s

        self.on_transcript = on_transcript
        self.on_error = on_error
        self.on_disconnect = on_disconnect
        self.on_state_change = on_state_change

        self._state = ConnectionState.IDLE
        self._ws: ClientConnection | None = None
        self._was_connected = False

        self._connect_future: asyncio.Future[None] | None = None
        self._open_task: asyncio.Task[None] | None = None
        self._recv_task: asyncio.Task[None] | None = None
        self._close_tasks: set[asyncio.Task[None]] = set()

        self._attempts = 0
        self._frames_sent = 0
        self._frames_dropped = 0

    # -------------------------------------------------------------------------
    # Read-only views
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def was_connected(self) -> bool:
        return self._was_connected

    @property
    def attempts(self) -> int:
        """Number of handshakes actually started (observability/tests)."""
        return self._attempts

    @property
    def url(self) -> str:
        return build_listen_url(self._base_url, model=self._model, language=self._language)

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Ensure the socket is open.

        - Already CONNECTED -> returns immediately.
        - Handshake in flight -> awaits that same attempt.
        - Otherwise -> starts a new attempt.

        Raises:
            TransportError if the attempt fails before the socket opens or
            is aborted by disconnect().
        """
        if self._state is ConnectionState.CONNECTED and self._ws is not None:
            return

        fut = self._connect_future
        if fut is None or fut.done():
            fut = self._begin_attempt()

        # Shield: one impatient caller must not cancel the shared attempt
        await asyncio.shield(fut)

    def disconnect(self) -> None:
        """
        Close the active connection unconditionally.

        Safe no-op when nothing is open. Never notifies on_disconnect.
        """
        open_task = self._open_task
        self._open_task = None
        if open_task is not None and not open_task.done():
            open_task.cancel()

        fut = self._connect_future
        if fut is not None and not fut.done():
            fut.set_exception(TransportError(ConnectionFailure.ABORTED))

        ws = self._ws
        self._ws = None
        self._was_connected = False

        rt = self._recv_task
        self._recv_task = None
        if rt is not None and not rt.done():
            rt.cancel()

        if ws is not None:
            self._schedule_close(ws)
            log_event({
                "event_type": "DEEPGRAM_DISCONNECT_REQUESTED",
                "frames_sent": self._frames_sent,
                "frames_dropped": self._frames_dropped,
            })

        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            self._set_state(ConnectionState.IDLE)

    async def send(self, chunk: bytes) -> None:
        """
        Transmit one binary audio frame, best effort.

        Dropped (not queued) when the socket is not CONNECTED. Send
        failures are logged; the receive loop reports the close itself.
        """
        ws = self._ws
        if ws is None or self._state is not ConnectionState.CONNECTED:
            self._frames_dropped += 1
            return
        if not chunk:
            return

        try:
            await ws.send(chunk)
            self._frames_sent += 1
        except ConnectionClosed:
            self._frames_dropped += 1
        except Exception as e:  # pylint: disable=broad-exception-caught
            self._frames_dropped += 1
            log_event({
                "event_type": "DEEPGRAM_SEND_FAILED",
                "error": repr(e),
                "chunk_bytes": len(chunk),
            })

    async def shutdown(self) -> None:
        """Disconnect and wait for outstanding socket closes to finish."""
        self.disconnect()
        if self._close_tasks:
            await asyncio.gather(*self._close_tasks, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Connection management
    # -------------------------------------------------------------------------

    def _begin_attempt(self) -> asyncio.Future[None]:
        # Synchronous up to task creation so concurrent callers cannot
        # both get here for the same attempt.
        stale = self._ws
        self._ws = None
        self._was_connected = False
        if stale is not None:
            self._schedule_close(stale)

        loop = asyncio.get_running_loop()
        fut: asyncio.Future[None] = loop.create_future()
        fut.add_done_callback(_retrieve_exception)
        self._connect_future = fut

        self._attempts += 1
        self._set_state(ConnectionState.CONNECTING)
        self._open_task = asyncio.create_task(self._open(fut))
        return fut

    async def _open(self, fut: asyncio.Future[None]) -> None:
        url = self.url
        log_event({
            "event_type": "DEEPGRAM_CONNECTING",
            "model": self._model,
            "language": self._language,
            "attempt": self._attempts,
        })

        try:
            with timed("deepgram_connect_latency", details={"attempt": self._attempts}):
                ws = await asyncio.wait_for(
                    ws_connect(
                        url,
                        subprotocols=auth_subprotocols(self._api_key),
                        open_timeout=None,
                        max_size=WS_MAX_MESSAGE_BYTES,
                    ),
                    timeout=self._connect_timeout_s,
                )
        except asyncio.CancelledError:
            if not fut.done():
                fut.set_exception(TransportError(ConnectionFailure.ABORTED))
            raise
        except Exception as e:  # pylint: disable=broad-exception-caught
            if fut.done():
                # Already aborted; a newer attempt may own the state now
                return
            reason, code = classify_connect_failure(e)
            err = TransportError(reason, close_message(reason, code), close_code=code)
            self._open_task = None
            self._was_connected = False
            self._set_state(ConnectionState.ERROR)
            log_event({
                "event_type": "DEEPGRAM_CONNECT_FAILED",
                "reason": reason.value,
                "close_code": code,
                "error": repr(e),
            })
            fut.set_exception(err)
            return

        if fut.done():
            # Aborted between handshake completion and resumption
            self._schedule_close(ws)
            return

        self._open_task = None
        self._ws = ws
        self._was_connected = True
        self._frames_sent = 0
        self._frames_dropped = 0
        self._set_state(ConnectionState.CONNECTED)
        log_event({
            "event_type": "DEEPGRAM_CONNECTED",
            "subprotocol": ws.subprotocol,
        })

        # One receiver loop per connection object
        self._recv_task = asyncio.create_task(self._recv_loop(ws))
        fut.set_result(None)

    def _schedule_close(self, ws: ClientConnection) -> None:
        task = asyncio.create_task(self._close_quietly(ws))
        self._close_tasks.add(task)
        task.add_done_callback(self._close_tasks.discard)

    async def _close_quietly(self, ws: ClientConnection) -> None:
        try:
            await ws.close()
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "DEEPGRAM_CLOSE_FAILED",
                "error": repr(e),
            })

    # -------------------------------------------------------------------------
    # Background loop
    # -------------------------------------------------------------------------

    async def _recv_loop(self, ws: ClientConnection) -> None:
        """
        Receive frames until the socket closes, then classify the close.

        Iteration ends normally on a clean close (1000/1001) and raises
        ConnectionClosedError on anything else.
        """
        clean = True
        code: int | None = None
        try:
            async for raw in ws:
                self._handle_message(raw)
            code = ws.close_code
        except asyncio.CancelledError:
            return
        except ConnectionClosedError as e:
            clean = False
            code = e.rcvd.code if e.rcvd is not None else WS_CLOSE_ABNORMAL
        except Exception as e:  # pylint: disable=broad-exception-caught
            clean = False
            code = WS_CLOSE_ABNORMAL
            log_event({
                "event_type": "DEEPGRAM_RECV_FAILED",
                "error": repr(e),
            })

        self._on_closed(ws, clean=clean, code=code)

    def _handle_message(self, raw: str | bytes) -> None:
        try:
            event = parse_transcript_message(raw)
        except MessageParseError as e:
            log_event({
                "event_type": "DEEPGRAM_MESSAGE_PARSE_ERROR",
                "error": str(e),
            })
            return

        if event is None:
            return

        if self.on_transcript is not None:
            self.on_transcript(event)

    def _on_closed(self, ws: ClientConnection, *, clean: bool, code: int | None) -> None:
        if ws is not self._ws:
            # Superseded or closed through disconnect(): not ours to report
            return

        self._ws = None
        self._recv_task = None
        was_connected = self._was_connected
        self._was_connected = False
        self._set_state(ConnectionState.IDLE)

        log_event({
            "event_type": "DEEPGRAM_CLOSED",
            "clean": clean,
            "close_code": code,
            "was_connected": was_connected,
            "frames_sent": self._frames_sent,
        })

        if not was_connected:
            return

        if not clean and self.on_error is not None:
            self.on_error(TransportError(ConnectionFailure.UNEXPECTED_CLOSE, close_code=code))

        if self.on_disconnect is not None:
            self.on_disconnect()

    def _set_state(self, new_state: ConnectionState) -> None:
        if new_state is self._state:
            return
        old = self._state
        self._state = new_state
        log_event({
            "event_type": "CONNECTION_STATE_CHANGED",
            "from": old.value,
            "to": new_state.value,
        })
        if self.on_state_change is not None:
            self.on_state_change(new_state)
