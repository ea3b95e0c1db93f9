"""Speech-to-text and text-to-speech modules."""

from .stt import GoogleStreamingRecognizer, TranscriptEvent
from .tts import CloudSpeechSynthesizer, EspeakSynthesizer, SubprocessAudioOutput, find_player

__all__ = [
    "GoogleStreamingRecognizer", "TranscriptEvent",
    "CloudSpeechSynthesizer", "EspeakSynthesizer", "SubprocessAudioOutput", "find_player",
]
