"""
Speaking assessment: record one sample, score it once, render the rubric.
"""
import asyncio
import logging
import time
import uuid
from enum import Enum
from typing import Iterable, List, Optional, Union

from ..config import FLUENCY_MAX, ORACLE_TIMEOUT, RUBRIC_MAX
from ..errors import (
    MalformedResponse, NetworkFailure, NoSpeechRecorded, PermissionDenied, ProviderUnavailable,
)
from ..infrastructure.audio.processing import AudioClip
from .events import AssessmentCompletedEvent, ErrorOccurredEvent, NoticeRaisedEvent, TutorEventBus
from .models import DEFAULT_USER, AssessmentResult, ConversationSession, Notice, ScoreBar, Speaker
from .services import AudioRecorder

logger = logging.getLogger("assessment")

# (field, label, ceiling)
RUBRIC = (
    ("fluency", "Fluency (WPM)", FLUENCY_MAX),
    ("lexical_richness", "Lexical Richness", RUBRIC_MAX),
    ("reflective_turns", "Reflective Turns", RUBRIC_MAX),
    ("autobiographical_depth", "Autobiographical Depth", RUBRIC_MAX),
    ("conversation_initiative", "Conversation Initiative", RUBRIC_MAX),
    ("narrative_continuity", "Narrative Continuity", RUBRIC_MAX),
)

ASSESSMENT_FAILED = Notice.error(
    "Assessment Failed", "There was an error processing your speech. Please try again."
)
NO_SPEECH = Notice.error(
    "No speech recorded", "We didn't catch any audio. Check your microphone and try again."
)


def score_bars(result: AssessmentResult) -> List[ScoreBar]:
    """Render the six metrics against their ceilings; percent is clamped to 0..100."""
    bars = []
    for key, label, ceiling in RUBRIC:
        value = getattr(result, key)
        percent = max(0.0, min(100.0, value * 100.0 / ceiling))
        bars.append(ScoreBar(key=key, label=label, value=value, max=ceiling, percent=percent))
    return bars


def format_elapsed(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}:{secs:02d}"


class AssessmentPhase(str, Enum):
    READY = "ready"
    RECORDING = "recording"
    ANALYZING = "analyzing"
    FAILED = "failed"
    COMPLETE = "complete"


class AssessmentSession:
    """One speaking assessment, from recording through scoring."""

    def __init__(self,
                 recorder: Optional[AudioRecorder],
                 oracle,
                 event_bus: Optional[TutorEventBus] = None,
                 user: Speaker = DEFAULT_USER,
                 oracle_timeout: float = ORACLE_TIMEOUT):
        self.recorder = recorder
        self.oracle = oracle
        self.event_bus = event_bus or TutorEventBus()
        self.user = user
        self.oracle_timeout = oracle_timeout
        self.id = uuid.uuid4().hex
        self.phase = AssessmentPhase.READY
        self.clip: Optional[AudioClip] = None
        self.result: Optional[AssessmentResult] = None
        self.notices: List[Notice] = []
        self._recording_started: Optional[float] = None
        self._recording_stopped: Optional[float] = None

    async def start(self) -> bool:
        """Start recording the sample. Returns False if the microphone could not be used."""
        if self.phase != AssessmentPhase.READY:
            logger.warning("start() ignored in phase %s", self.phase.value)
            return False
        try:
            if self.recorder is None:
                raise ProviderUnavailable("No audio recorder configured")
            await self.recorder.start()
        except (PermissionDenied, ProviderUnavailable) as e:
            self._report_error(e)
            self._raise_notice(Notice.error(
                "Microphone unavailable", "Allow microphone access to take the assessment."
            ))
            return False
        self.phase = AssessmentPhase.RECORDING
        self._recording_started = time.monotonic()
        self._recording_stopped = None
        logger.info("Assessment %s recording", self.id)
        return True

    async def finish(self) -> Optional[AssessmentResult]:
        """Stop recording and score the sample."""
        if self.phase != AssessmentPhase.RECORDING:
            logger.warning("finish() ignored in phase %s", self.phase.value)
            return None
        clip = await self.recorder.stop()
        self._recording_stopped = time.monotonic()
        return await self._analyze(clip)

    async def analyze_conversation(
            self, source: Union[ConversationSession, Iterable[AudioClip]]) -> Optional[AssessmentResult]:
        """Score a conversational assessment from its per-turn clips."""
        if self.phase in (AssessmentPhase.RECORDING, AssessmentPhase.ANALYZING):
            logger.warning("analyze_conversation() ignored in phase %s", self.phase.value)
            return None
        clips = source.audio_fragments if isinstance(source, ConversationSession) else list(source)
        logger.info("Analyzing conversation from %d clips", len(clips))
        return await self._analyze(AudioClip.concatenate(clips))

    async def retry(self) -> Optional[AssessmentResult]:
        """Send the same audio again after a failed scoring."""
        if self.phase != AssessmentPhase.FAILED or self.clip is None:
            return None
        return await self._score(self.clip)

    async def retake(self) -> None:
        """Discard the result and audio and start over."""
        if self.recorder is not None and self.recorder.is_recording:
            await self.recorder.stop()
        self.clip = None
        self.result = None
        self._recording_started = None
        self._recording_stopped = None
        self.phase = AssessmentPhase.READY

    @property
    def elapsed_seconds(self) -> float:
        """Recording time so far; frozen once recording stops."""
        if self._recording_started is None:
            return 0.0
        end = self._recording_stopped if self._recording_stopped is not None else time.monotonic()
        return end - self._recording_started

    def score_bars(self) -> List[ScoreBar]:
        return score_bars(self.result) if self.result else []

    async def _analyze(self, clip: Optional[AudioClip]) -> Optional[AssessmentResult]:
        try:
            self._require_speech(clip)
        except NoSpeechRecorded as e:
            logger.warning("Assessment %s: %s", self.id, e)
            self._raise_notice(NO_SPEECH)
            self.phase = AssessmentPhase.READY
            return None
        self.clip = clip
        return await self._score(clip)

    @staticmethod
    def _require_speech(clip: Optional[AudioClip]) -> None:
        if clip is None or clip.is_empty:
            raise NoSpeechRecorded("No audio chunks were recorded")

    async def _score(self, clip: AudioClip) -> Optional[AssessmentResult]:
        self.phase = AssessmentPhase.ANALYZING
        logger.info("Scoring %.1fs of audio", clip.duration_seconds)

        error: Optional[Exception] = None
        try:
            scores = await asyncio.wait_for(self.oracle.score(clip.to_data_uri()), self.oracle_timeout)
        except asyncio.TimeoutError:
            error = NetworkFailure(f"No scores within {self.oracle_timeout:.0f}s")
        except (NetworkFailure, MalformedResponse) as e:
            error = e

        if error is not None:
            logger.error("Failed to assess speaking skills: %s", error)
            self._report_error(error)
            self._raise_notice(ASSESSMENT_FAILED)
            self.phase = AssessmentPhase.FAILED
            return None

        self.result = AssessmentResult.from_scores(scores, user_id=self.user.id)
        self.phase = AssessmentPhase.COMPLETE
        logger.info("Assessment %s complete: %s", self.id, self.result.scores())
        self.event_bus.emit(AssessmentCompletedEvent(
            self.id, time.time(), self.result.id, self.result.scores()
        ))
        return self.result

    def _raise_notice(self, notice: Notice) -> None:
        self.notices.append(notice)
        self.event_bus.emit(NoticeRaisedEvent(
            self.id, time.time(), notice.title, notice.description, notice.variant
        ))

    def _report_error(self, error: Exception) -> None:
        self.event_bus.emit(ErrorOccurredEvent(
            self.id, time.time(), type(error).__name__, str(error), "assessment"
        ))
