# pylint: disable=missing-module-docstring,missing-function-docstring

import json
from enum import Enum
from typing import Any

import pytest

from observability import logger


class Color(str, Enum):
    RED = "red"


def test_log_event_emits_valid_jsonl(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """
    Contract:
    - log_event emits exactly one JSONL line
    - payload is serialized as-is, plus a ts_ms stamp
    - output sink is patchable
    """
    captured: list[str] = []

    def fake_print(line: str) -> None:
        captured.append(line)

    # Patch the explicit output sink used by logger
    monkeypatch.setattr(logger, "_print", fake_print)

    payload: dict[str, Any] = {
        "event_type": "TEST",
        "value": 123,
    }

    logger.log_event(payload)

    # Exactly one line emitted
    assert len(captured) == 1
    assert "\n" not in captured[0]

    # Must be valid JSON
    decoded = json.loads(captured[0])

    # Payload must be preserved, caller's dict untouched
    assert isinstance(decoded.pop("ts_ms"), int)
    assert decoded == payload
    assert "ts_ms" not in payload


def test_caller_timestamp_is_kept(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: list[str] = []
    monkeypatch.setattr(logger, "_print", captured.append)

    logger.log_event({"event_type": "TEST", "ts_ms": 42})

    assert json.loads(captured[0])["ts_ms"] == 42


def test_non_json_values_are_stringified(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: list[str] = []
    monkeypatch.setattr(logger, "_print", captured.append)

    logger.log_event({"event_type": "TEST", "color": Color.RED, "err": ValueError("bad")})

    decoded = json.loads(captured[0])
    assert decoded["color"] == "red"
    assert decoded["err"] == "bad"


def test_disabled_logger_is_silent(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: list[str] = []
    monkeypatch.setattr(logger, "_print", captured.append)
    monkeypatch.setattr(logger, "_enabled", False)

    logger.log_event({"event_type": "TEST"})

    assert captured == []
