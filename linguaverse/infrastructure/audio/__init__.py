"""
Audio infrastructure for LinguaVerse.

- microphone: shared PyAudio input with reference-counted taps
- processing: audio clips, WAV encoding and data URIs
- speech: streaming recognition, synthesis and playback
"""

from .microphone import Microphone, MicrophoneTap
from .processing import AudioClip, encode_data_uri, decode_data_uri
from .speech import (
    GoogleStreamingRecognizer, TranscriptEvent,
    CloudSpeechSynthesizer, EspeakSynthesizer, SubprocessAudioOutput,
)

__all__ = [
    "Microphone", "MicrophoneTap",
    "AudioClip", "encode_data_uri", "decode_data_uri",
    "GoogleStreamingRecognizer", "TranscriptEvent",
    "CloudSpeechSynthesizer", "EspeakSynthesizer", "SubprocessAudioOutput",
]
