"""
Media services used by the turn controller.

- TranscriptCapture: restartable streaming recognition over a microphone tap
- AudioRecorder: raw PCM capture of the same utterance
- SpeechSynthesisPlayer: text to audio playback with mute and cancellation
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional

from ..errors import (
    PlaybackError, ProviderUnavailable, RecognitionError, RecognitionUnavailable,
    SilenceTimeout, SynthesisUnavailable, TutorError,
)
from ..infrastructure.audio.processing import AudioClip, decode_data_uri
from ..infrastructure.audio.speech.stt import TranscriptEvent

capture_logger = logging.getLogger("transcript_capture")
recorder_logger = logging.getLogger("audio_recorder")
player_logger = logging.getLogger("speech_player")


class TranscriptCapture:
    """Continuous speech recognition for one listening turn."""

    def __init__(self, recognizer, microphone):
        self.recognizer = recognizer
        self.microphone = microphone
        self.restarts = 0
        self._active = False
        self._tap = None

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def supported(self) -> bool:
        return self.recognizer is not None and self.microphone is not None

    async def start(self) -> None:
        """
        Begin capturing.

        Raises:
            RecognitionUnavailable: If there is no recognizer or microphone
            PermissionDenied: If the microphone cannot be opened
        """
        if self._active:
            return
        if not self.supported:
            raise RecognitionUnavailable("Speech recognition is not available on this system")

        self._tap = await self.microphone.open_tap()
        self._active = True
        capture_logger.info("Transcript capture started")

    async def events(self) -> AsyncIterator[TranscriptEvent]:
        """
        Transcript events until capture stops.

        Provider timeouts and stream ends restart recognition on the same tap.

        Raises:
            RecognitionError: On provider failure; capture is stopped first
        """
        while self._active:
            tap = self._tap
            try:
                async for event in self.recognizer.stream(tap, tap.sample_rate):
                    yield event
            except SilenceTimeout as e:
                if not self._active:
                    return
                self.restarts += 1
                capture_logger.info("Recognition timed out (%s), restarting stream #%d", e, self.restarts)
            except RecognitionError as e:
                capture_logger.error("Recognition failed: %s", e)
                self._release()
                raise
            else:
                if not self._active:
                    return
                self.restarts += 1
                capture_logger.info("Recognition stream ended, restarting stream #%d", self.restarts)
            # Let stop() run between restarts
            await asyncio.sleep(0)

    async def stop(self) -> None:
        """Stop capturing. No-op if not active."""
        if not self._active and self._tap is None:
            return
        self._release()
        capture_logger.info("Transcript capture stopped")

    def _release(self) -> None:
        self._active = False
        tap, self._tap = self._tap, None
        if tap is not None:
            tap.close()


class AudioRecorder:
    """Collects raw audio for one utterance from a microphone tap."""

    def __init__(self, microphone):
        self.microphone = microphone
        self.last_clip: Optional[AudioClip] = None
        self._tap = None
        self._task: Optional[asyncio.Task] = None
        self._chunks: List[bytes] = []

    @property
    def is_recording(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        """
        Start recording. No-op if already recording.

        Raises:
            ProviderUnavailable: If there is no microphone
            PermissionDenied: If the microphone cannot be opened
        """
        if self._task is not None:
            return
        if self.microphone is None:
            raise ProviderUnavailable("No microphone available")

        tap = await self.microphone.open_tap()
        self._tap = tap
        self._chunks = []
        self._task = asyncio.create_task(self._collect(tap))
        recorder_logger.info("Recording started")

    async def _collect(self, tap) -> None:
        async for chunk in tap:
            self._chunks.append(chunk)

    async def stop(self) -> Optional[AudioClip]:
        """
        Stop recording and return everything captured as one clip.

        Returns:
            The clip, or None if not recording
        """
        if self._task is None:
            return None

        task, tap = self._task, self._tap
        try:
            # Closing queues an end marker behind any pending chunks
            tap.close()
            await task
        finally:
            tap.close()
            self._task = None
            self._tap = None

        clip = AudioClip(chunks=list(self._chunks), sample_rate=tap.sample_rate, channels=tap.channels)
        self.last_clip = clip
        recorder_logger.info("Recording stopped: %d chunks, %.2fs", len(clip.chunks), clip.duration_seconds)
        return clip

    async def __aenter__(self) -> 'AudioRecorder':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


@dataclass(frozen=True)
class PlaybackEvent:
    """Lifecycle of one ``speak`` call."""
    kind: str
    text: str
    interrupted: bool = False
    muted: bool = False
    error: Optional[TutorError] = None

    STARTED = "started"
    ENDED = "ended"
    ERROR = "error"


PlaybackListener = Callable[[PlaybackEvent], None]


class SpeechSynthesisPlayer:
    """Speaks replies; a new ``speak`` interrupts the current one."""

    def __init__(self, speech_oracle=None, output=None, fallback=None, muted: bool = False):
        self.speech_oracle = speech_oracle
        self.output = output
        self.fallback = fallback
        self.muted = muted
        self._listeners: List[PlaybackListener] = []
        self._generation = 0
        self._playing = False
        self._started_at: Optional[float] = None

    def add_listener(self, listener: PlaybackListener) -> None:
        self._listeners.append(listener)

    @property
    def is_playing(self) -> bool:
        return self._playing

    @property
    def position(self) -> float:
        """Seconds into the current utterance; 0.0 when nothing is playing."""
        if not self._playing or self._started_at is None:
            return 0.0
        return asyncio.get_running_loop().time() - self._started_at

    def set_muted(self, muted: bool) -> None:
        self.muted = muted
        if muted:
            self.cancel()

    def cancel(self) -> None:
        """Stop any in-flight speech immediately."""
        self._generation += 1
        if self._playing:
            player_logger.info("Playback cancelled")
        self._playing = False
        self._started_at = None
        if self.output is not None:
            self.output.stop()

    async def speak(self, text: str) -> PlaybackEvent:
        """
        Speak text, interrupting anything already playing.

        Returns:
            The terminal event: ``ended`` (possibly interrupted or muted) or ``error``
        """
        self.cancel()
        generation = self._generation

        if self.muted:
            player_logger.debug("Muted, skipping synthesis")
            return self._emit(PlaybackEvent(PlaybackEvent.ENDED, text, muted=True))

        try:
            wav_bytes = await self._synthesize(text)
        except SynthesisUnavailable as e:
            player_logger.warning("Synthesis unavailable: %s", e)
            return self._emit(PlaybackEvent(PlaybackEvent.ERROR, text, error=e))

        if generation != self._generation:
            return self._emit(PlaybackEvent(PlaybackEvent.ENDED, text, interrupted=True))

        if self.output is None:
            error = PlaybackError("No audio output configured")
            return self._emit(PlaybackEvent(PlaybackEvent.ERROR, text, error=error))

        self._playing = True
        self._started_at = asyncio.get_running_loop().time()
        self._emit(PlaybackEvent(PlaybackEvent.STARTED, text))
        try:
            completed = await self.output.play(wav_bytes)
        except PlaybackError as e:
            player_logger.error("Playback failed: %s", e)
            return self._emit(PlaybackEvent(PlaybackEvent.ERROR, text, error=e))
        except OSError as e:
            player_logger.error("Audio output failed: %s", e)
            error = PlaybackError(f"Audio output failed: {e}")
            return self._emit(PlaybackEvent(PlaybackEvent.ERROR, text, error=error))
        finally:
            if generation == self._generation:
                self._playing = False
                self._started_at = None

        interrupted = not completed or generation != self._generation
        return self._emit(PlaybackEvent(PlaybackEvent.ENDED, text, interrupted=interrupted))

    async def _synthesize(self, text: str) -> bytes:
        if self.speech_oracle is not None:
            try:
                result = await self.speech_oracle.synthesize(text)
                _, wav_bytes = decode_data_uri(result.audio_data_uri)
                return wav_bytes
            except SynthesisUnavailable:
                if self.fallback is None:
                    raise
                player_logger.info("Cloud synthesis failed, using local fallback")
        if self.fallback is not None:
            return await self.fallback.synthesize(text)
        raise SynthesisUnavailable("No speech synthesizer configured")

    def _emit(self, event: PlaybackEvent) -> PlaybackEvent:
        for listener in list(self._listeners):
            listener(event)
        return event
