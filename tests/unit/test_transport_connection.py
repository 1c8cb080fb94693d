# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio

import pytest
from websockets.datastructures import Headers
from websockets.exceptions import InvalidStatus
from websockets.http11 import Response

import adapters.asr.deepgram_realtime as deepgram_realtime
from adapters.asr.deepgram_realtime import TransportConnection
from session.errors import ConnectionFailure, TransportError
from session.states import ConnectionState
from transcript.assembler import TranscriptEvent

from fakes import FakeDeepgramServer, capture_events, event_types, settle, transcript_frame


class Recorder:
    def __init__(self) -> None:
        self.transcripts: list[TranscriptEvent] = []
        self.errors: list[TransportError] = []
        self.disconnects = 0
        self.states: list[ConnectionState] = []

    def on_disconnect(self) -> None:
        self.disconnects += 1


@pytest.fixture
def server(monkeypatch: pytest.MonkeyPatch) -> FakeDeepgramServer:
    fake = FakeDeepgramServer()
    monkeypatch.setattr(deepgram_realtime, "ws_connect", fake.connect)
    return fake


@pytest.fixture
def events(monkeypatch: pytest.MonkeyPatch) -> list[dict]:
    return capture_events(monkeypatch)


def make_transport(rec: Recorder, **kwargs) -> TransportConnection:
    return TransportConnection(
        api_key=kwargs.pop("api_key", "dg-secret"),
        on_transcript=rec.transcripts.append,
        on_error=rec.errors.append,
        on_disconnect=rec.on_disconnect,
        on_state_change=rec.states.append,
        **kwargs,
    )


# ---------------------------------------------------------------------
# connect()
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_connect_opens_socket_with_token_auth(server, events):
    rec = Recorder()
    t = make_transport(rec, model="nova-2", language="en-GB")

    await t.connect()

    assert t.state is ConnectionState.CONNECTED
    assert t.was_connected
    assert rec.states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]

    url, kwargs = server.calls[0]
    assert "model=nova-2" in url
    assert "language=en-GB" in url
    assert "interim_results=true" in url
    assert kwargs["subprotocols"] == ["token", "dg-secret"]
    assert "DEEPGRAM_CONNECTED" in event_types(events)

    await t.shutdown()


@pytest.mark.asyncio
async def test_connect_when_connected_is_noop(server):
    t = make_transport(Recorder())
    await t.connect()
    await t.connect()

    assert len(server.calls) == 1
    assert t.attempts == 1

    await t.shutdown()


@pytest.mark.asyncio
async def test_concurrent_connects_share_one_attempt(server):
    server.gate = asyncio.Event()
    t = make_transport(Recorder())

    callers = asyncio.gather(t.connect(), t.connect(), t.connect())
    await settle()
    assert t.state is ConnectionState.CONNECTING

    server.gate.set()
    await callers

    assert len(server.calls) == 1
    assert len(server.sockets) == 1
    assert t.attempts == 1
    assert t.state is ConnectionState.CONNECTED

    await t.shutdown()


@pytest.mark.asyncio
async def test_connect_timeout(server, events):
    server.gate = asyncio.Event()  # never set
    rec = Recorder()
    t = make_transport(rec, connect_timeout_s=0.01)

    with pytest.raises(TransportError) as ei:
        await t.connect()

    assert ei.value.reason is ConnectionFailure.TIMEOUT
    assert ei.value.is_fatal
    assert t.state is ConnectionState.ERROR
    assert "DEEPGRAM_CONNECT_FAILED" in event_types(events)
    # Pre-open failures reject connect() only; they never reach the sinks
    assert rec.errors == []
    assert rec.disconnects == 0


@pytest.mark.asyncio
async def test_connect_auth_rejected(server):
    server.error = InvalidStatus(Response(401, "Unauthorized", Headers()))
    t = make_transport(Recorder())

    with pytest.raises(TransportError) as ei:
        await t.connect()

    assert ei.value.reason is ConnectionFailure.AUTH_REJECTED
    assert "Invalid API key" in str(ei.value)
    assert t.state is ConnectionState.ERROR


@pytest.mark.asyncio
async def test_connect_network_failure(server):
    server.error = OSError("connection refused")
    t = make_transport(Recorder())

    with pytest.raises(TransportError) as ei:
        await t.connect()

    assert ei.value.reason is ConnectionFailure.NETWORK_FAILURE


@pytest.mark.asyncio
async def test_reconnect_after_failure_starts_new_attempt(server):
    server.error = OSError("down")
    t = make_transport(Recorder())
    with pytest.raises(TransportError):
        await t.connect()

    server.error = None
    await t.connect()

    assert t.attempts == 2
    assert t.state is ConnectionState.CONNECTED

    await t.shutdown()


@pytest.mark.asyncio
async def test_disconnect_aborts_pending_attempt(server):
    server.gate = asyncio.Event()
    rec = Recorder()
    t = make_transport(rec)

    pending = asyncio.create_task(t.connect())
    await settle()

    t.disconnect()

    with pytest.raises(TransportError) as ei:
        await pending

    assert ei.value.reason is ConnectionFailure.ABORTED
    assert not ei.value.is_fatal
    assert t.state is ConnectionState.IDLE
    assert server.sockets == []
    assert rec.disconnects == 0


# ---------------------------------------------------------------------
# send()
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_send_while_idle_is_dropped_silently(server):
    t = make_transport(Recorder())
    await t.send(b"audio")

    assert server.calls == []


@pytest.mark.asyncio
async def test_send_forwards_binary_frames(server):
    t = make_transport(Recorder())
    await t.connect()

    await t.send(b"one")
    await t.send(b"two")

    assert server.latest.sent == [b"one", b"two"]

    await t.shutdown()


# ---------------------------------------------------------------------
# Inbound + close handling
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_transcripts_reach_sink(server):
    rec = Recorder()
    t = make_transport(rec)
    await t.connect()

    server.latest.feed(transcript_frame("hel", is_final=False))
    server.latest.feed(transcript_frame("hello", is_final=True))
    await settle()

    assert rec.transcripts == [
        TranscriptEvent(is_final=False, text="hel"),
        TranscriptEvent(is_final=True, text="hello"),
    ]

    await t.shutdown()


@pytest.mark.asyncio
async def test_malformed_message_keeps_state(server, events):
    rec = Recorder()
    t = make_transport(rec)
    await t.connect()

    server.latest.feed("{garbage")
    await settle()

    assert t.state is ConnectionState.CONNECTED
    assert rec.transcripts == []
    assert rec.errors == []
    assert "DEEPGRAM_MESSAGE_PARSE_ERROR" in event_types(events)

    await t.shutdown()


@pytest.mark.asyncio
async def test_abnormal_close_reports_unexpected_close(server):
    rec = Recorder()
    t = make_transport(rec)
    await t.connect()

    server.latest.server_close(1006)
    await settle()

    assert t.state is ConnectionState.IDLE
    assert rec.disconnects == 1
    assert len(rec.errors) == 1
    assert rec.errors[0].reason is ConnectionFailure.UNEXPECTED_CLOSE
    assert rec.errors[0].close_code == 1006
    assert not rec.errors[0].is_fatal


@pytest.mark.asyncio
async def test_clean_server_close_notifies_without_error(server):
    rec = Recorder()
    t = make_transport(rec)
    await t.connect()

    server.latest.server_close(1000)
    await settle()

    assert t.state is ConnectionState.IDLE
    assert rec.disconnects == 1
    assert rec.errors == []


@pytest.mark.asyncio
async def test_local_disconnect_is_silent(server):
    rec = Recorder()
    t = make_transport(rec)
    await t.connect()
    ws = server.latest

    t.disconnect()
    await settle()

    assert ws.closed
    assert t.state is ConnectionState.IDLE
    assert rec.disconnects == 0
    assert rec.errors == []


@pytest.mark.asyncio
async def test_disconnect_when_idle_is_noop(server):
    rec = Recorder()
    t = make_transport(rec)

    t.disconnect()

    assert t.state is ConnectionState.IDLE
    assert rec.states == []
