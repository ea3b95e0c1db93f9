import asyncio
import threading
import time
from unittest.mock import Mock

import numpy as np
import pytest

from linguaverse.errors import PermissionDenied, ProviderUnavailable
from linguaverse.infrastructure.audio import microphone as microphone_module
from linguaverse.infrastructure.audio.microphone import Microphone
from linguaverse.infrastructure.audio.processing import (
    AudioClip, decode_data_uri, encode_data_uri, resample_pcm16,
)
from linguaverse.tutor.testing import make_wav, speech_chunk


# Data URIs and clips

def test_data_uri_round_trip_keeps_mime():
    uri = encode_data_uri(b"\x00\x01payload", "audio/webm")

    assert uri.startswith("data:audio/webm;base64,")
    assert decode_data_uri(uri) == ("audio/webm", b"\x00\x01payload")


def test_decode_data_uri_accepts_parameters():
    mime, payload = decode_data_uri("data:audio/webm;codecs=opus;base64,AAEC")

    assert mime == "audio/webm"
    assert payload == b"\x00\x01\x02"


@pytest.mark.parametrize("uri", ["", "hello", "data:audio/wav,plain", "data:audio/wav;base64,!!!"])
def test_decode_data_uri_rejects_invalid(uri):
    with pytest.raises(ValueError):
        decode_data_uri(uri)


def test_clip_wav_encoding():
    clip = AudioClip(chunks=[speech_chunk(1600), speech_chunk(1600)])

    wav = clip.to_wav_bytes()
    restored = AudioClip.from_wav_bytes(wav)

    assert restored.pcm == clip.pcm
    assert restored.sample_rate == 16000
    assert clip.duration_seconds == pytest.approx(0.2)
    assert clip.to_data_uri().startswith("data:audio/wav;base64,")


def test_clip_rms_level():
    assert AudioClip().rms_level() == 0.0
    assert AudioClip(chunks=[speech_chunk(level=16384)]).rms_level() == pytest.approx(0.5)


def test_empty_clip():
    assert AudioClip().is_empty
    assert AudioClip(chunks=[b"", b""]).is_empty
    assert not AudioClip(chunks=[speech_chunk(1)]).is_empty


def test_concatenate_skips_empty_clips():
    a = AudioClip(chunks=[speech_chunk(100)])
    b = AudioClip(chunks=[speech_chunk(200)])

    joined = AudioClip.concatenate([a, AudioClip(), None, b])

    assert joined.pcm == a.pcm + b.pcm
    assert AudioClip.concatenate([]).is_empty


def test_concatenate_resamples_and_folds_channels():
    mono = AudioClip(chunks=[speech_chunk(1600)], sample_rate=16000, channels=1)
    stereo = AudioClip(chunks=[speech_chunk(2 * 4800)], sample_rate=48000, channels=2)

    joined = AudioClip.concatenate([mono, stereo])

    assert joined.sample_rate == 16000
    assert joined.channels == 1
    assert joined.duration_seconds == pytest.approx(0.2, abs=0.002)


def test_resample_pcm16():
    samples = np.full(4800, 1000, dtype=np.int16)

    out = resample_pcm16(samples, 48000, 16000)

    assert out.dtype == np.int16
    assert len(out) == 1600
    assert resample_pcm16(samples, 16000, 16000) is samples


def test_make_wav_is_readable():
    clip = AudioClip.from_wav_bytes(make_wav(0.5))

    assert clip.duration_seconds == pytest.approx(0.5)


# Microphone

def fake_pyaudio(open_error=None):
    module = Mock()
    module.paInt16 = 8
    module.paContinue = 0
    pa = module.PyAudio.return_value
    if open_error is not None:
        pa.open.side_effect = open_error
    return module


async def test_microphone_callback_feeds_every_tap():
    module = fake_pyaudio()
    microphone = Microphone(sample_rate=16000, pyaudio_module=module)

    first = await microphone.open_tap()
    second = await microphone.open_tap()
    assert module.PyAudio.return_value.open.call_count == 1
    kwargs = module.PyAudio.return_value.open.call_args.kwargs
    assert kwargs["rate"] == 16000
    assert kwargs["frames_per_buffer"] == 1600
    assert kwargs["input"] is True

    assert microphone._callback(b"\x01\x00", 1, None, 0) == (None, module.paContinue)
    assert await asyncio.wait_for(first.read(), 1.0) == b"\x01\x00"
    assert await asyncio.wait_for(second.read(), 1.0) == b"\x01\x00"

    first.close()
    assert microphone.is_open
    second.close()
    second.close()
    assert not microphone.is_open
    await microphone.wait_closed()
    module.PyAudio.return_value.terminate.assert_called_once()


async def test_closed_tap_stops_iteration():
    microphone = Microphone(pyaudio_module=fake_pyaudio())
    tap = await microphone.open_tap()
    tap.feed(b"ab")
    tap.close()
    tap.feed(b"cd")

    assert [chunk async for chunk in tap] == [b"ab"]


async def test_microphone_open_retries_then_denies():
    module = fake_pyaudio(open_error=OSError("Device unavailable"))
    microphone = Microphone(pyaudio_module=module, max_retries=3, retry_delay=0)

    with pytest.raises(PermissionDenied):
        await microphone.open_tap()

    assert module.PyAudio.return_value.open.call_count == 3
    assert microphone.tap_count == 0
    assert not microphone.is_open


async def test_microphone_without_pyaudio(monkeypatch):
    monkeypatch.setattr(microphone_module, "load_pyaudio", lambda: None)

    with pytest.raises(ProviderUnavailable):
        await Microphone().open_tap()


async def test_microphone_close_releases_taps():
    microphone = Microphone(pyaudio_module=fake_pyaudio())
    tap = await microphone.open_tap()

    microphone.close()

    assert tap.closed
    assert await tap.read() is None
    assert not microphone.is_open


async def test_device_closes_off_the_event_loop():
    module = fake_pyaudio()
    stream = module.PyAudio.return_value.open.return_value
    closed_on = []
    stream.stop_stream.side_effect = lambda: closed_on.append(threading.get_ident())
    microphone = Microphone(pyaudio_module=module)

    tap = await microphone.open_tap()
    tap.close()
    await microphone.wait_closed()

    assert closed_on and closed_on[0] != threading.get_ident()
    stream.close.assert_called_once()
    module.PyAudio.return_value.terminate.assert_called_once()


async def test_cancelled_open_still_releases_device():
    module = fake_pyaudio()
    pa = module.PyAudio.return_value
    stream = Mock()

    def slow_open(**kwargs):
        time.sleep(0.1)
        return stream

    pa.open.side_effect = slow_open
    microphone = Microphone(pyaudio_module=module)

    task = asyncio.create_task(microphone.open_tap())
    await asyncio.sleep(0.02)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await microphone.wait_closed()

    assert not microphone.is_open
    assert microphone.tap_count == 0
    stream.stop_stream.assert_called_once()
    pa.terminate.assert_called_once()


async def test_reopen_waits_for_pending_close():
    module = fake_pyaudio()
    microphone = Microphone(pyaudio_module=module)

    (await microphone.open_tap()).close()
    tap = await microphone.open_tap()

    assert microphone.is_open
    assert module.PyAudio.return_value.terminate.call_count == 1
    await microphone.aclose()
    assert tap.closed
    assert module.PyAudio.return_value.terminate.call_count == 2
