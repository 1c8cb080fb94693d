# pylint: disable=missing-module-docstring,missing-function-docstring

import json
import urllib.parse

import pytest
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosedError, InvalidStatus, NegotiationError
from websockets.frames import Close
from websockets.http11 import Response

from protocol.deepgram import (
    auth_subprotocols,
    build_listen_url,
    classify_close_code,
    classify_connect_failure,
    close_message,
    parse_transcript_message,
)
from session.errors import ConnectionFailure, MessageParseError
from transcript.assembler import TranscriptEvent


def http_rejection(status: int) -> InvalidStatus:
    return InvalidStatus(Response(status, "rejected", Headers()))


# ---------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------

def test_listen_url_carries_all_query_params():
    url = build_listen_url("wss://api.deepgram.com/v1/listen", model="nova-2", language="de")

    parsed = urllib.parse.urlparse(url)
    query = dict(urllib.parse.parse_qsl(parsed.query))

    assert parsed.netloc == "api.deepgram.com"
    assert parsed.path == "/v1/listen"
    assert query == {
        "model": "nova-2",
        "language": "de",
        "punctuate": "true",
        "interim_results": "true",
    }


def test_auth_subprotocols_pair():
    assert auth_subprotocols("secret") == ["token", "secret"]


# ---------------------------------------------------------------------
# Failure classification
# ---------------------------------------------------------------------

@pytest.mark.parametrize(
    "code, expected",
    [
        (1000, None),
        (1002, ConnectionFailure.AUTH_REJECTED),
        (1008, ConnectionFailure.AUTH_REJECTED),
        (1006, ConnectionFailure.NETWORK_FAILURE),
        (1011, ConnectionFailure.NETWORK_FAILURE),
        (None, ConnectionFailure.NETWORK_FAILURE),
    ],
)
def test_classify_close_code(code, expected):
    assert classify_close_code(code) is expected


def test_timeout_is_classified_as_timeout():
    assert classify_connect_failure(TimeoutError()) == (ConnectionFailure.TIMEOUT, None)


@pytest.mark.parametrize("status", [401, 403])
def test_http_auth_rejection(status):
    reason, code = classify_connect_failure(http_rejection(status))
    assert reason is ConnectionFailure.AUTH_REJECTED
    assert code is None


def test_other_http_status_is_network_failure():
    reason, _ = classify_connect_failure(http_rejection(503))
    assert reason is ConnectionFailure.NETWORK_FAILURE


def test_close_during_handshake_uses_received_code():
    exc = ConnectionClosedError(Close(1008, "invalid key"), None)
    assert classify_connect_failure(exc) == (ConnectionFailure.AUTH_REJECTED, 1008)


def test_close_without_frame_is_abnormal():
    exc = ConnectionClosedError(None, None)
    assert classify_connect_failure(exc) == (ConnectionFailure.NETWORK_FAILURE, 1006)


def test_subprotocol_negotiation_failure_is_auth():
    reason, code = classify_connect_failure(NegotiationError("no subprotocol"))
    assert reason is ConnectionFailure.AUTH_REJECTED
    assert code == 1002


def test_os_error_is_network_failure():
    assert classify_connect_failure(OSError("unreachable")) == (
        ConnectionFailure.NETWORK_FAILURE,
        None,
    )


def test_close_message_for_unusual_code():
    msg = close_message(ConnectionFailure.NETWORK_FAILURE, 4000)
    assert msg is not None
    assert "code: 4000" in msg


def test_close_message_defaults_to_reason_text():
    assert close_message(ConnectionFailure.TIMEOUT, None) is None
    assert close_message(ConnectionFailure.NETWORK_FAILURE, 1006) is None


# ---------------------------------------------------------------------
# Inbound messages
# ---------------------------------------------------------------------

def test_parse_final_result():
    raw = json.dumps({
        "is_final": True,
        "channel": {"alternatives": [{"transcript": "hello world"}]},
    })
    assert parse_transcript_message(raw) == TranscriptEvent(is_final=True, text="hello world")


def test_parse_interim_result_defaults_is_final_false():
    raw = json.dumps({"channel": {"alternatives": [{"transcript": "hel"}]}})
    assert parse_transcript_message(raw) == TranscriptEvent(is_final=False, text="hel")


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "Metadata", "request_id": "abc"},
        {"channel": {"alternatives": []}},
        {"channel": {}},
        {"channel": {"alternatives": [{"transcript": ""}]}, "is_final": True},
        {"channel": {"alternatives": [{"confidence": 0.1}]}},
    ],
)
def test_messages_without_text_are_ignored(payload):
    assert parse_transcript_message(json.dumps(payload)) is None


@pytest.mark.parametrize(
    "raw",
    [
        "{not json",
        "[1, 2, 3]",
        json.dumps({"channel": "oops"}),
        json.dumps({"channel": {"alternatives": "oops"}}),
        json.dumps({"channel": {"alternatives": [{"transcript": 42}]}}),
        b"\x00\x01",
    ],
)
def test_malformed_messages_raise(raw):
    with pytest.raises(MessageParseError):
        parse_transcript_message(raw)


@pytest.mark.parametrize("flag", ["false", "true", 0, 1, None])
def test_non_boolean_is_final_raises(flag):
    raw = json.dumps({
        "is_final": flag,
        "channel": {"alternatives": [{"transcript": "hello"}]},
    })
    with pytest.raises(MessageParseError):
        parse_transcript_message(raw)
