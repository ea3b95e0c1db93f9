"""Infrastructure components for LinguaVerse.

Low-level audio and LLM clients that the tutor services build on.
"""

from .audio import (
    Microphone, AudioClip, GoogleStreamingRecognizer, TranscriptEvent,
    CloudSpeechSynthesizer, EspeakSynthesizer, SubprocessAudioOutput,
)
from .llm import GeminiRestClient

__all__ = [
    "Microphone", "AudioClip", "GoogleStreamingRecognizer", "TranscriptEvent",
    "CloudSpeechSynthesizer", "EspeakSynthesizer", "SubprocessAudioOutput",
    "GeminiRestClient",
]
