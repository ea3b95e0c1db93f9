"""
Audio clip container, WAV encoding and data URI helpers.
"""
import base64
import io
import math
import re
import wave
from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

import numpy as np
from scipy.signal import resample_poly

from ...config import SAMPLE_RATE, CHANNELS

_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)(?:;[\w-]+=[\w.-]+)*;base64,(?P<data>.*)$", re.DOTALL)


def encode_data_uri(payload: bytes, mime_type: str = "audio/wav") -> str:
    """Wrap raw bytes as ``data:<mime>;base64,<data>``."""
    return f"data:{mime_type};base64,{base64.b64encode(payload).decode('ascii')}"


def decode_data_uri(uri: str) -> Tuple[str, bytes]:
    """
    Split a base64 data URI into its MIME type and decoded payload.

    Raises:
        ValueError: If the string is not a base64 data URI
    """
    match = _DATA_URI_RE.match(uri.strip())
    if not match:
        raise ValueError("Not a base64 data URI")
    try:
        payload = base64.b64decode(match.group("data"), validate=True)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e
    return match.group("mime"), payload


def stereo_to_mono(x: np.ndarray) -> np.ndarray:
    """Convert interleaved multi-channel audio to mono by averaging channels."""
    return np.mean(x, axis=1)


def resample_pcm16(samples: np.ndarray, sr_from: int, sr_to: int) -> np.ndarray:
    """Resample int16 samples between arbitrary integer rates."""
    if sr_from == sr_to or samples.size == 0:
        return samples
    g = math.gcd(sr_from, sr_to)
    y = resample_poly(samples.astype(np.float32), up=sr_to // g, down=sr_from // g)
    return np.clip(y, -32768, 32767).astype(np.int16)


def write_wav(buffer, pcm16: bytes, sr: int, channels: int = 1) -> None:
    """Write PCM16 audio data as WAV to a path or file object."""
    with wave.open(buffer, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(sr)
        wf.writeframes(pcm16)


def read_wav(payload: bytes) -> Tuple[bytes, int, int]:
    """Return (pcm16 frames, sample rate, channels) from WAV bytes."""
    with wave.open(io.BytesIO(payload), "rb") as wf:
        if wf.getsampwidth() != 2:
            raise ValueError(f"Expected 16-bit WAV, got {wf.getsampwidth() * 8}-bit")
        return wf.readframes(wf.getnframes()), wf.getframerate(), wf.getnchannels()


@dataclass
class AudioClip:
    """Finalized PCM16 audio for one utterance or one assessment sample."""
    chunks: List[bytes] = field(default_factory=list)
    sample_rate: int = SAMPLE_RATE
    channels: int = CHANNELS

    @property
    def pcm(self) -> bytes:
        return b"".join(self.chunks)

    @property
    def is_empty(self) -> bool:
        return not any(self.chunks)

    @property
    def duration_seconds(self) -> float:
        frames = len(self.pcm) // (2 * self.channels)
        return frames / float(self.sample_rate)

    def samples(self) -> np.ndarray:
        """Samples as an int16 array, shape (n, channels)."""
        data = self.pcm
        data = data[:len(data) - len(data) % (2 * self.channels)]
        return np.frombuffer(data, dtype=np.int16).reshape(-1, self.channels)

    def rms_level(self) -> float:
        """RMS of the mono signal on a 0..1 scale."""
        if self.is_empty:
            return 0.0
        x = self.samples().astype(np.float32) / 32768.0
        mono = stereo_to_mono(x) if self.channels > 1 else x.flatten()
        return float(np.sqrt(np.mean(mono ** 2)))

    def to_wav_bytes(self) -> bytes:
        buf = io.BytesIO()
        write_wav(buf, self.pcm, self.sample_rate, self.channels)
        return buf.getvalue()

    def to_data_uri(self) -> str:
        return encode_data_uri(self.to_wav_bytes(), "audio/wav")

    @classmethod
    def from_wav_bytes(cls, payload: bytes) -> 'AudioClip':
        pcm, sr, channels = read_wav(payload)
        return cls(chunks=[pcm], sample_rate=sr, channels=channels)

    @classmethod
    def concatenate(cls, clips: Iterable['AudioClip']) -> 'AudioClip':
        """
        Join clips into one, resampling to the first non-empty clip's format.

        Channel counts are folded to mono when they disagree.
        """
        clips = [c for c in clips if c is not None and not c.is_empty]
        if not clips:
            return cls()

        target_sr = clips[0].sample_rate
        target_channels = clips[0].channels
        if any(c.channels != target_channels for c in clips):
            target_channels = 1

        chunks = []
        for clip in clips:
            if clip.sample_rate == target_sr and clip.channels == target_channels:
                chunks.extend(clip.chunks)
                continue
            x = clip.samples()
            if target_channels == 1 and clip.channels > 1:
                x = stereo_to_mono(x.astype(np.float32)).astype(np.int16).reshape(-1, 1)
            columns = [resample_pcm16(x[:, ch], clip.sample_rate, target_sr) for ch in range(x.shape[1])]
            chunks.append(np.stack(columns, axis=1).astype(np.int16).tobytes())

        return cls(chunks=chunks, sample_rate=target_sr, channels=target_channels)
