# pylint: disable=missing-module-docstring,missing-function-docstring

import sys
import types
from typing import Any

import numpy as np
import pytest
import soundfile as sf

from audio.device import DeviceAccessError, DeviceAccessFailure
from audio.microphone import SoundDeviceMicrophone, classify_portaudio_error
from constants import CAPTURE_MIME_TYPE

from fakes import FakeStream


class FakePortAudioError(Exception):
    pass


class FakeInputStream:
    instances: list["FakeInputStream"] = []

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.started = False
        self.closed = False
        FakeInputStream.instances.append(self)

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.started = False

    def close(self) -> None:
        self.closed = True


def install_fake_sounddevice(monkeypatch: pytest.MonkeyPatch, *, query_error: Exception | None = None):
    FakeInputStream.instances = []

    def query_devices(device=None, kind=None):
        if query_error is not None:
            raise query_error
        return {"name": "Fake USB Mic", "max_input_channels": 1}

    module = types.SimpleNamespace(
        PortAudioError=FakePortAudioError,
        InputStream=FakeInputStream,
        query_devices=query_devices,
    )
    monkeypatch.setitem(sys.modules, "sounddevice", module)
    return module


# ---------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------

@pytest.mark.parametrize(
    "exc, expected",
    [
        (FakePortAudioError("Error opening InputStream: Permission denied"), DeviceAccessFailure.PERMISSION_DENIED),
        (ValueError("No input device matching 'usb'"), DeviceAccessFailure.DEVICE_NOT_FOUND),
        (FakePortAudioError("Invalid device [PaErrorCode -9996]"), DeviceAccessFailure.DEVICE_NOT_FOUND),
        (FakePortAudioError("Unanticipated host error"), DeviceAccessFailure.OTHER),
    ],
)
def test_classify_portaudio_error(exc, expected):
    assert classify_portaudio_error(exc) is expected


# ---------------------------------------------------------------------
# request_access()
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_request_access_opens_and_starts_stream(monkeypatch: pytest.MonkeyPatch):
    install_fake_sounddevice(monkeypatch)
    mic = SoundDeviceMicrophone(device=2)

    stream = await mic.request_access()

    assert stream.name == "Fake USB Mic"
    opened = FakeInputStream.instances[0]
    assert opened.started
    assert opened.kwargs["device"] == 2
    assert opened.kwargs["samplerate"] == 16_000
    assert opened.kwargs["channels"] == 1

    stream.release()
    stream.release()
    assert opened.closed


@pytest.mark.asyncio
async def test_missing_device_is_reported(monkeypatch: pytest.MonkeyPatch):
    install_fake_sounddevice(monkeypatch, query_error=ValueError("No input device matching 'usb'"))
    mic = SoundDeviceMicrophone(device="usb")

    with pytest.raises(DeviceAccessError) as ei:
        await mic.request_access()

    assert ei.value.reason is DeviceAccessFailure.DEVICE_NOT_FOUND
    assert FakeInputStream.instances == []


def test_encoding_support_is_limited_to_ogg_opus():
    mic = SoundDeviceMicrophone()

    assert not mic.supports_encoding("audio/webm;codecs=opus")
    assert mic.supports_encoding(CAPTURE_MIME_TYPE) == ("OPUS" in sf.available_subtypes("OGG"))


def test_create_encoder_rejects_foreign_stream():
    mic = SoundDeviceMicrophone()

    with pytest.raises(TypeError):
        mic.create_encoder(FakeStream(), CAPTURE_MIME_TYPE)


# ---------------------------------------------------------------------
# Ogg/Opus encoder
# ---------------------------------------------------------------------

@pytest.mark.skipif(
    "OPUS" not in sf.available_subtypes("OGG"),
    reason="libsndfile built without Opus",
)
@pytest.mark.asyncio
async def test_encoder_produces_ogg_pages(monkeypatch: pytest.MonkeyPatch):
    install_fake_sounddevice(monkeypatch)
    mic = SoundDeviceMicrophone()
    stream = await mic.request_access()

    encoder = mic.create_encoder(stream, CAPTURE_MIME_TYPE)
    encoder.start()
    assert encoder.active

    # One second of a 440 Hz tone in 20 ms blocks, as PortAudio would deliver it
    t = np.arange(16_000, dtype=np.float32) / 16_000
    tone = (0.2 * np.sin(2 * np.pi * 440 * t)).astype(np.float32).reshape(-1, 1)
    for block in np.split(tone, 50):
        stream.callback(block, len(block), None, None)  # type: ignore[attr-defined]

    first = encoder.flush()
    encoder.stop()
    tail = encoder.flush()

    data = first + tail
    assert data.startswith(b"OggS")
    assert not encoder.active

    stream.release()
