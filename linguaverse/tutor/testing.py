"""
Testing infrastructure with mock services for the tutor.

The doubles subclass the real services where they can so the controller sees
the same interface, and they record what happened for assertions.
"""
import asyncio
import io
import time
import wave
from typing import Any, Dict, List, Optional, Sequence, Union
from unittest.mock import Mock

from ..errors import (
    PermissionDenied, RecognitionError, RecognitionUnavailable, SynthesisUnavailable, TutorError,
)
from ..infrastructure.audio.microphone import Microphone
from ..infrastructure.audio.processing import AudioClip
from ..infrastructure.audio.speech.stt import TranscriptEvent
from .controller import TurnController
from .models import ConversationMode
from .schemas import AssessmentScores
from .services import AudioRecorder, PlaybackEvent, SpeechSynthesisPlayer, TranscriptCapture


def make_wav(duration_s: float = 0.1, sample_rate: int = 16000) -> bytes:
    """A silent mono PCM16 WAV file."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(b"\x00\x00" * int(duration_s * sample_rate))
    return buf.getvalue()


def speech_chunk(n_samples: int = 1600, level: int = 1000) -> bytes:
    """A PCM16 chunk of constant non-zero level."""
    return level.to_bytes(2, "little", signed=True) * n_samples


class ActivityMonitor:
    """Records every moment capture and playback were active together."""

    def __init__(self):
        self.capture_active = False
        self.playback_active = False
        self.violations: List[str] = []
        self.log: List[str] = []

    def _check(self, what: str) -> None:
        self.log.append(what)
        if self.capture_active and self.playback_active:
            self.violations.append(what)

    def capture_started(self) -> None:
        self.capture_active = True
        self._check("capture_started")

    def capture_stopped(self) -> None:
        self.capture_active = False
        self.log.append("capture_stopped")

    def playback_started(self) -> None:
        self.playback_active = True
        self._check("playback_started")

    def playback_stopped(self) -> None:
        self.playback_active = False
        self.log.append("playback_stopped")


class FakeMicrophone(Microphone):
    """Microphone with no device behind it; tests push chunks by hand."""

    def __init__(self, deny: bool = False, sample_rate: int = 16000, channels: int = 1,
                 open_delay: float = 0.0):
        super().__init__(sample_rate=sample_rate, channels=channels, max_retries=1, retry_delay=0)
        self.deny = deny
        self.open_delay = open_delay
        self.open_count = 0
        self.close_count = 0

    def _open_stream(self) -> None:
        # Runs in a worker thread, like the real open
        if self.open_delay:
            time.sleep(self.open_delay)
        if self.deny:
            raise PermissionDenied("Microphone access denied")
        self.open_count += 1
        self._stream = Mock()

    def _close_device(self, stream, pa) -> None:
        self.close_count += 1

    def push(self, chunk: bytes) -> None:
        self._dispatch(chunk)


class FakeRecognizer:
    """
    Recognizer that plays back scripted streams.

    Each script is a list of TranscriptEvent items, optionally ending with an
    exception to raise. Once the scripts run out, streams idle until the tap
    closes.
    """

    def __init__(self, scripts: Optional[List[List[Union[TranscriptEvent, Exception]]]] = None):
        self.scripts = list(scripts or [])
        self.stream_count = 0

    async def stream(self, tap, sample_rate: Optional[int] = None):
        self.stream_count += 1
        if not self.scripts:
            while await tap.read() is not None:
                pass
            return
        for item in self.scripts.pop(0):
            if isinstance(item, Exception):
                raise item
            await asyncio.sleep(0)
            yield item


class ScriptedTranscriptCapture(TranscriptCapture):
    """Transcript capture driven by ``say()`` from the test."""

    def __init__(self, monitor: Optional[ActivityMonitor] = None, unsupported: bool = False):
        # Don't call super().__init__; there is no recognizer or microphone
        self.monitor = monitor
        self.unsupported = unsupported
        self.restarts = 0
        self.start_count = 0
        self.stop_count = 0
        self._active = False
        self._tap = None
        self._deny_next = False
        self._queue: asyncio.Queue = asyncio.Queue()

    @property
    def supported(self) -> bool:
        return not self.unsupported

    def say(self, text: str) -> None:
        self._queue.put_nowait(TranscriptEvent(text=text, is_final=True))

    def say_interim(self, text: str) -> None:
        self._queue.put_nowait(TranscriptEvent(text=text, is_final=False))

    def fail(self, error: Optional[Exception] = None) -> None:
        self._queue.put_nowait(error or RecognitionError("network error"))

    def deny_permission(self) -> None:
        self._deny_next = True

    async def start(self) -> None:
        if self._active:
            return
        if self.unsupported:
            raise RecognitionUnavailable("Speech recognition is not supported")
        if self._deny_next:
            self._deny_next = False
            raise PermissionDenied("Microphone access denied")
        self._active = True
        self.start_count += 1
        if self.monitor:
            self.monitor.capture_started()

    async def events(self):
        while self._active:
            item = await self._queue.get()
            if isinstance(item, Exception):
                self._release()
                raise item
            yield item

    def _release(self) -> None:
        if self._active:
            self.stop_count += 1
            if self.monitor:
                self.monitor.capture_stopped()
        self._active = False


class MockAudioRecorder(AudioRecorder):
    """Recorder that returns a canned clip per utterance."""

    def __init__(self, chunks: Optional[Sequence[bytes]] = None, deny: bool = False):
        # Don't call super().__init__ to avoid needing a microphone
        self.microphone = None
        self.chunks = list(chunks) if chunks is not None else [speech_chunk()]
        self.deny = deny
        self.last_clip: Optional[AudioClip] = None
        self.clips: List[AudioClip] = []
        self._recording = False

    @property
    def is_recording(self) -> bool:
        return self._recording

    async def start(self) -> None:
        if self._recording:
            return
        if self.deny:
            raise PermissionDenied("Microphone access denied")
        self._recording = True

    async def stop(self) -> Optional[AudioClip]:
        if not self._recording:
            return None
        self._recording = False
        clip = AudioClip(chunks=list(self.chunks))
        self.last_clip = clip
        self.clips.append(clip)
        return clip


class MockSpeechPlayer(SpeechSynthesisPlayer):
    """
    Player that records what it was asked to say.

    With ``auto_finish`` each utterance ends after ``duration`` seconds;
    otherwise the test calls ``finish()``.
    """

    def __init__(self, monitor: Optional[ActivityMonitor] = None, auto_finish: bool = True,
                 duration: float = 0.0, fail_with: Optional[TutorError] = None):
        super().__init__()
        self.monitor = monitor
        self.auto_finish = auto_finish
        self.duration = duration
        self.fail_with = fail_with
        self.spoken_messages: List[str] = []
        self.events: List[PlaybackEvent] = []
        self.cancel_count = 0
        self._done: Optional[asyncio.Event] = None
        self._speaking = asyncio.Event()
        self.add_listener(self.events.append)

    async def wait_until_speaking(self, timeout: float = 2.0) -> None:
        await asyncio.wait_for(self._speaking.wait(), timeout)

    def finish(self) -> None:
        if self._done is not None:
            self._done.set()

    def cancel(self) -> None:
        was_playing = self._playing
        super().cancel()
        if was_playing:
            self.cancel_count += 1
            if self.monitor:
                self.monitor.playback_stopped()
        self._speaking.clear()
        if self._done is not None:
            self._done.set()

    async def speak(self, text: str) -> PlaybackEvent:
        self.cancel()
        generation = self._generation
        if self.muted:
            return self._emit(PlaybackEvent(PlaybackEvent.ENDED, text, muted=True))

        self.spoken_messages.append(text)
        if self.fail_with is not None:
            return self._emit(PlaybackEvent(PlaybackEvent.ERROR, text, error=self.fail_with))

        done = asyncio.Event()
        self._done = done
        self._playing = True
        self._started_at = asyncio.get_running_loop().time()
        if self.monitor:
            self.monitor.playback_started()
        self._speaking.set()
        self._emit(PlaybackEvent(PlaybackEvent.STARTED, text))

        if self.auto_finish:
            try:
                await asyncio.wait_for(done.wait(), self.duration or 0.001)
            except asyncio.TimeoutError:
                pass
        else:
            await done.wait()

        interrupted = generation != self._generation
        if not interrupted:
            self._playing = False
            self._started_at = None
            self._speaking.clear()
            if self.monitor:
                self.monitor.playback_stopped()
        return self._emit(PlaybackEvent(PlaybackEvent.ENDED, text, interrupted=interrupted))


class MockSynthesizer:
    """Synthesizer returning a silent WAV, or failing."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.requests: List[str] = []

    async def synthesize(self, text: str) -> bytes:
        self.requests.append(text)
        if self.fail:
            raise SynthesisUnavailable("mock synthesis failure")
        return make_wav()


class FakeAudioOutput:
    """Audio output that plays until ``finish()`` or ``stop()``."""

    def __init__(self, auto_finish: bool = False, error: Optional[Exception] = None):
        self.auto_finish = auto_finish
        self.error = error
        self.played: List[bytes] = []
        self.stop_count = 0
        self._done: Optional[asyncio.Event] = None
        self._stopped = False

    async def play(self, wav_bytes: bytes) -> bool:
        self.played.append(wav_bytes)
        if self.error is not None:
            raise self.error
        self._stopped = False
        self._done = asyncio.Event()
        if self.auto_finish:
            self._done.set()
        await self._done.wait()
        return not self._stopped

    def finish(self) -> None:
        if self._done is not None:
            self._done.set()

    def stop(self) -> None:
        self.stop_count += 1
        if self._done is not None and not self._done.is_set():
            self._stopped = True
            self._done.set()


class MockFeedbackOracle:
    """Feedback oracle with scripted replies and failures."""

    DEFAULT_REPLY = "That sounds great! What else do you enjoy?"

    def __init__(self, replies: Optional[List[Union[str, Exception]]] = None,
                 gate: Optional[asyncio.Event] = None):
        self.replies = list(replies or [])
        self.gate = gate
        self.calls: List[Dict[str, Any]] = []

    async def respond(self, spoken_text: str, history=None, feedback_request=None, assessment=None) -> str:
        self.calls.append({
            "spoken_text": spoken_text,
            "history": history,
            "feedback_request": feedback_request,
            "assessment": assessment,
        })
        if self.gate is not None:
            await self.gate.wait()
        reply = self.replies.pop(0) if self.replies else self.DEFAULT_REPLY
        if isinstance(reply, Exception):
            raise reply
        return reply


class MockAssessmentOracle:
    """Assessment oracle with scripted scores and failures."""

    def __init__(self, results: Optional[List[Union[AssessmentScores, Exception]]] = None):
        self.results = list(results or [])
        self.calls: List[str] = []

    async def score(self, speech_data_uri: str) -> AssessmentScores:
        self.calls.append(speech_data_uri)
        result = self.results.pop(0) if self.results else sample_scores()
        if isinstance(result, Exception):
            raise result
        return result


class MockLLMClient:
    """Mock LLM client for testing."""

    def __init__(self, mock_responses: List[Union[Dict[str, Any], str, Exception]]):
        self.mock_responses = mock_responses
        self.current_response_idx = 0
        self.request_history: List[Dict[str, Any]] = []

    def _next(self):
        if self.current_response_idx >= len(self.mock_responses):
            raise AssertionError("MockLLMClient ran out of responses")
        response = self.mock_responses[self.current_response_idx]
        self.current_response_idx += 1
        if isinstance(response, Exception):
            raise response
        return response

    def generate_content(self, prompt_text: Optional[str] = None, parts=None, **kwargs) -> str:
        self.request_history.append({"prompt": prompt_text, "parts": parts, "kwargs": kwargs})
        return self._next()

    def generate_json(self, prompt: str, parts=None, temperature: float = 0.7) -> Dict[str, Any]:
        self.request_history.append({"prompt": prompt, "parts": parts, "temperature": temperature})
        return self._next()


def sample_scores(**overrides) -> AssessmentScores:
    values = {
        "fluency": 90,
        "lexical_richness": 7,
        "reflective_turns": 4,
        "autobiographical_depth": 3,
        "conversation_initiative": 5,
        "narrative_continuity": 6,
    }
    values.update(overrides)
    return AssessmentScores(**values)


def create_mock_conversation_setup(mode: ConversationMode = ConversationMode.AGENTIC,
                                   replies: Optional[List[Union[str, Exception]]] = None,
                                   auto_finish: bool = True,
                                   topic: Optional[str] = None,
                                   **controller_kwargs) -> Dict[str, Any]:
    """Create a controller wired to mock services, plus the mocks themselves."""
    monitor = ActivityMonitor()
    capture = ScriptedTranscriptCapture(monitor)
    recorder = MockAudioRecorder()
    oracle = MockFeedbackOracle(replies)
    player = MockSpeechPlayer(monitor, auto_finish=auto_finish)
    controller = TurnController(
        capture=capture,
        recorder=recorder,
        oracle=oracle,
        player=player,
        mode=mode,
        topic=topic,
        **controller_kwargs,
    )
    return {
        "controller": controller,
        "capture": capture,
        "recorder": recorder,
        "oracle": oracle,
        "player": player,
        "monitor": monitor,
    }
