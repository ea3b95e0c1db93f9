"""
Conversation turn controller.

A single state machine decides whose turn it is. It drives transcript
capture and the recorder while the learner speaks, asks the feedback oracle
for a reply, and plays the reply back. Microphone capture and playback are
never active at the same time.
"""
import asyncio
import contextlib
import logging
import time
from typing import Dict, List, Optional, Tuple

from ..config import Config, ORACLE_TIMEOUT, TutorPersonality
from ..errors import (
    MalformedResponse, NetworkFailure, PermissionDenied, ProviderUnavailable, RecognitionError,
)
from ..infrastructure.audio.processing import AudioClip
from .events import (
    TutorEventBus, EventLogger, SessionMetrics,
    SessionStartedEvent, StateChangedEvent, MessageAppendedEvent, TranscriptUpdatedEvent,
    PlaybackStartedEvent, PlaybackEndedEvent, PlaybackFailedEvent, NoticeRaisedEvent,
    SessionEndedEvent, ErrorOccurredEvent,
)
from .models import (
    AI_TUTOR, DEFAULT_USER, PEER_PARTNER, ConversationMode, ConversationSession, Message,
    Notice, SessionStats, Speaker, TurnState, now_ms,
)
from .schemas import AssessmentScores
from .services import AudioRecorder, PlaybackEvent, SpeechSynthesisPlayer, TranscriptCapture

logger = logging.getLogger("turn_controller")

AGENTIC_OPENING = (
    "Hello! I'm your agentic AI partner. Let's talk about your recent travel experiences. "
    "Where is the most interesting place you've visited?"
)
NON_AGENTIC_OPENING = "Ready to begin."
PEER_OPENING = (
    "Hey! I'm another learner, just like you. Let's practice together. "
    "What do you want to talk about?"
)
DIRECT_RESPONSE_REQUEST = "Provide a direct response."

RESPONSE_FAILED = Notice.error("Error", "Failed to get a response from the AI.")


def opening_line(mode: ConversationMode, topic: Optional[str] = None) -> str:
    if mode == ConversationMode.NON_AGENTIC:
        return NON_AGENTIC_OPENING
    if mode == ConversationMode.PEER:
        return PEER_OPENING
    if mode == ConversationMode.ASSESSMENT:
        return f"Great, let's talk about {topic or 'yourself'}. To start, what comes to mind first?"
    return AGENTIC_OPENING


def feedback_request_for(mode: ConversationMode, topic: Optional[str] = None) -> Optional[str]:
    """Directive sent with every reply request in this mode."""
    if mode == ConversationMode.NON_AGENTIC:
        return DIRECT_RESPONSE_REQUEST
    if mode == ConversationMode.ASSESSMENT:
        return f"Ask a short follow-up question about the topic: {topic or 'the learner'}."
    return None


class TurnController:
    """
    Strictly alternating conversation loop between the learner and a partner.

    Only the controller writes ``state``. Collaborators report back through
    awaited results; each continuation carries the session and playback
    tokens it started under and is dropped if either has moved on.
    """

    def __init__(self,
                 capture: TranscriptCapture,
                 recorder: AudioRecorder,
                 oracle,
                 player: SpeechSynthesisPlayer,
                 mode: ConversationMode = ConversationMode.AGENTIC,
                 topic: Optional[str] = None,
                 user: Speaker = DEFAULT_USER,
                 partner: Optional[Speaker] = None,
                 event_bus: Optional[TutorEventBus] = None,
                 oracle_timeout: float = ORACLE_TIMEOUT,
                 assessment: Optional[AssessmentScores] = None,
                 muted: bool = False,
                 microphone=None):
        self.capture = capture
        self.recorder = recorder
        self.oracle = oracle
        self.player = player
        # Owned device, released when the session ends
        self.microphone = microphone
        self.mode = mode
        self.user = user
        self.partner = partner or (PEER_PARTNER if mode == ConversationMode.PEER else AI_TUTOR)
        self.event_bus = event_bus or TutorEventBus()
        self.oracle_timeout = oracle_timeout
        self.assessment = assessment
        self.feedback_request = feedback_request_for(mode, topic)

        self.session = ConversationSession(mode=mode, topic=topic)
        self.state = TurnState.IDLE
        self.state_trace: List[TurnState] = [TurnState.IDLE]
        self.notices: List[Notice] = []
        self.transcript_preview = ""
        self.muted = muted
        self.player.muted = muted

        self._session_token = 0
        self._playback_token = 0
        self._listen_task: Optional[asyncio.Task] = None
        self._speak_task: Optional[asyncio.Task] = None
        self._reply_task: Optional[asyncio.Task] = None
        self._waiters: List[Tuple[Tuple[TurnState, ...], asyncio.Future]] = []

    # ------------------------------------------------------------------ #
    # Construction
    # ------------------------------------------------------------------ #

    @classmethod
    def from_config(cls,
                    config: Config,
                    mode: ConversationMode = ConversationMode.AGENTIC,
                    topic: Optional[str] = None,
                    voice_input: bool = True,
                    personality: Optional[TutorPersonality] = None,
                    event_bus: Optional[TutorEventBus] = None) -> 'TurnController':
        """Build a controller wired to the real microphone, Google speech and Gemini."""
        from ..infrastructure.audio.microphone import Microphone
        from ..infrastructure.audio.speech.stt import GoogleStreamingRecognizer
        from ..infrastructure.audio.speech.tts import (
            CloudSpeechSynthesizer, EspeakSynthesizer, SubprocessAudioOutput,
        )
        from ..infrastructure.llm.client import GeminiRestClient
        from .oracles import FeedbackOracle, PeerResponder, SpeechOracle

        microphone = None
        recognizer = None
        if voice_input:
            microphone = Microphone(
                device_index=config.input_device,
                sample_rate=config.sample_rate,
                channels=config.channels,
            )
            recognizer = GoogleStreamingRecognizer(
                api_key=config.gemini_api_key,
                language_code=config.language_code,
                sample_rate=config.sample_rate,
            )

        if mode == ConversationMode.PEER:
            oracle = PeerResponder()
        else:
            client = GeminiRestClient(
                api_key=config.gemini_api_key, model=config.model_name, timeout=config.llm_timeout
            )
            oracle = FeedbackOracle(client, personality or config.personality)

        speech_oracle = None
        fallback = None
        output = None
        if config.enable_voice:
            speech_oracle = SpeechOracle(CloudSpeechSynthesizer(
                api_key=config.gemini_api_key,
                voice=config.tts_voice,
                language_code=config.language_code,
            ))
            espeak = EspeakSynthesizer()
            fallback = espeak if espeak.available else None
            output = SubprocessAudioOutput()

        return cls(
            capture=TranscriptCapture(recognizer, microphone),
            recorder=AudioRecorder(microphone),
            oracle=oracle,
            player=SpeechSynthesisPlayer(speech_oracle=speech_oracle, output=output, fallback=fallback),
            mode=mode,
            topic=topic,
            event_bus=event_bus,
            oracle_timeout=config.oracle_timeout,
            muted=config.start_muted or not config.enable_voice,
            microphone=microphone,
        )

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    @property
    def is_ended(self) -> bool:
        return self.state == TurnState.SESSION_ENDED

    @property
    def stats(self) -> SessionStats:
        return self.session.stats()

    @property
    def messages(self) -> List[Message]:
        return self.session.messages

    async def start(self) -> None:
        """Open the conversation with the partner's greeting."""
        if self.state != TurnState.IDLE:
            logger.warning("start() ignored in state %s", self.state.value)
            return
        logger.info("Starting %s session %s (topic=%s)", self.mode.value, self.session.id, self.session.topic)
        self.event_bus.emit(SessionStartedEvent(
            self.session.id, time.time(), self.mode.value, self.session.topic
        ))
        greeting = opening_line(self.mode, self.session.topic)
        self._append(Message.create(greeting, self.partner))
        self._begin_speaking(greeting)

    def submit_text(self, text: str) -> bool:
        """
        Submit a typed utterance.

        Returns:
            False if the learner does not have the turn or the text is blank
        """
        text = (text or "").strip()
        if not text:
            return False
        if self.state != TurnState.USER_RECORDING:
            logger.info("Typed input refused in state %s", self.state.value)
            return False

        self._set_state(TurnState.PROCESSING_RESPONSE)
        listen_task = self._listen_task
        self._reply_task = asyncio.create_task(
            self._finish_typed_turn(text, listen_task, self._session_token)
        )
        return True

    def toggle_mute(self) -> bool:
        """
        Flip voice output. Muting while the partner speaks hands the turn to
        the learner immediately.

        Returns:
            The new mute state
        """
        self.muted = not self.muted
        self.player.muted = self.muted
        logger.info("Voice %s", "muted" if self.muted else "unmuted")

        if self.muted and self.state == TurnState.AI_SPEAKING:
            self._playback_token += 1
            self.player.cancel()
            self.event_bus.emit(PlaybackEndedEvent(self.session.id, time.time(), interrupted=True, muted=True))
            self._start_listening()
        return self.muted

    def resume_listening(self) -> bool:
        """Retry capture after a microphone or recognition failure."""
        if self.state != TurnState.USER_RECORDING:
            return False
        return self._start_listening()

    async def end_session(self) -> ConversationSession:
        """
        End the conversation and hand off the session with its audio.

        In-flight replies are not cancelled; they are dropped when they arrive.
        """
        if self.state == TurnState.SESSION_ENDED:
            return self.session

        self._session_token += 1
        self._playback_token += 1
        self.player.cancel()
        self._set_state(TurnState.SESSION_ENDED)

        listen_task = self._listen_task
        if listen_task is not None and not listen_task.done():
            listen_task.cancel()
            await asyncio.wait([listen_task])

        clip = await self._stop_media()
        self._keep_clip(clip)
        if self.microphone is not None:
            await self.microphone.aclose()
        self.session.ended_at = now_ms()

        logger.info("Session %s ended: %d messages, %d audio fragments",
                    self.session.id, len(self.session.messages), len(self.session.audio_fragments))
        self.event_bus.emit(SessionEndedEvent(
            self.session.id, time.time(), len(self.session.messages), len(self.session.audio_fragments)
        ))
        return self.session

    async def wait_for_state(self, *states: TurnState, timeout: Optional[float] = 5.0) -> TurnState:
        """Wait until the controller enters one of ``states``; returns at once if already there."""
        if self.state in states:
            return self.state
        future = asyncio.get_running_loop().create_future()
        self._waiters.append((states, future))
        return await asyncio.wait_for(future, timeout)

    # ------------------------------------------------------------------ #
    # State machine internals
    # ------------------------------------------------------------------ #

    def _set_state(self, new_state: TurnState) -> None:
        previous = self.state
        if previous == new_state:
            return
        self.state = new_state
        self.state_trace.append(new_state)
        logger.debug("State %s -> %s", previous.value, new_state.value)
        self.event_bus.emit(StateChangedEvent(self.session.id, time.time(), previous.value, new_state.value))

        pending = []
        for states, future in self._waiters:
            if future.done():
                continue
            if new_state in states:
                future.set_result(new_state)
            else:
                pending.append((states, future))
        self._waiters = pending

    def _is_stale(self, session_token: int, playback_token: Optional[int] = None) -> bool:
        if session_token != self._session_token:
            return True
        return playback_token is not None and playback_token != self._playback_token

    def _append(self, message: Message) -> Message:
        message = self.session.append(message)
        self.event_bus.emit(MessageAppendedEvent(
            self.session.id, time.time(), message.id, message.speaker.name,
            message.speaker.role.value, message.text
        ))
        return message

    def _raise_notice(self, notice: Notice) -> None:
        self.notices.append(notice)
        log = logger.error if notice.is_destructive else logger.warning
        log("Notice: %s - %s", notice.title, notice.description)
        self.event_bus.emit(NoticeRaisedEvent(
            self.session.id, time.time(), notice.title, notice.description, notice.variant
        ))

    def _report_error(self, error: Exception, component: str) -> None:
        self.event_bus.emit(ErrorOccurredEvent(
            self.session.id, time.time(), type(error).__name__, str(error), component
        ))

    def _keep_clip(self, clip: Optional[AudioClip]) -> None:
        if clip is not None and not clip.is_empty:
            self.session.audio_fragments.append(clip)

    # Speaking ---------------------------------------------------------- #

    def _begin_speaking(self, text: str) -> None:
        self._set_state(TurnState.AI_SPEAKING)
        self._playback_token += 1
        if self.muted:
            logger.debug("Muted, handing the turn straight back")
            self._start_listening()
            return
        self._speak_task = asyncio.create_task(
            self._speak(text, self._session_token, self._playback_token)
        )

    async def _speak(self, text: str, session_token: int, playback_token: int) -> None:
        self.event_bus.emit(PlaybackStartedEvent(self.session.id, time.time(), text))
        result: PlaybackEvent = await self.player.speak(text)

        if self._is_stale(session_token, playback_token) or self.state != TurnState.AI_SPEAKING:
            logger.debug("Dropping stale playback result (%s)", result.kind)
            return

        if result.kind == PlaybackEvent.ERROR:
            logger.warning("Playback failed, continuing without voice: %s", result.error)
            self.event_bus.emit(PlaybackFailedEvent(
                self.session.id, time.time(), type(result.error).__name__, str(result.error)
            ))
            self._raise_notice(Notice("Voice unavailable", "The reply could not be played aloud."))
        else:
            self.event_bus.emit(PlaybackEndedEvent(
                self.session.id, time.time(), result.interrupted, result.muted
            ))
        self._start_listening()

    # Listening --------------------------------------------------------- #

    def _start_listening(self) -> bool:
        self._set_state(TurnState.USER_RECORDING)
        self.transcript_preview = ""

        if self.capture.is_active or (self._listen_task is not None and not self._listen_task.done()):
            logger.debug("Capture already active, not starting another listener")
            return False

        self._listen_task = asyncio.create_task(self._listen(self._session_token))
        return True

    async def _listen(self, session_token: int) -> None:
        try:
            try:
                await self.capture.start()
                await self.recorder.start()
            except (PermissionDenied, ProviderUnavailable) as e:
                await self._stop_media()
                if not self._is_stale(session_token):
                    self._report_error(e, "capture")
                    self._raise_notice(self._capture_notice(e))
                return

            if self._is_stale(session_token) or self.state != TurnState.USER_RECORDING:
                await self._stop_media()
                return

            utterance = None
            try:
                async with contextlib.aclosing(self.capture.events()) as events:
                    async for event in events:
                        if self._is_stale(session_token):
                            break
                        if not event.is_final:
                            self.transcript_preview = event.text
                            self.event_bus.emit(TranscriptUpdatedEvent(
                                self.session.id, time.time(), event.text, False
                            ))
                            continue
                        text = event.text.strip()
                        if not text or self.state != TurnState.USER_RECORDING:
                            continue
                        self.event_bus.emit(TranscriptUpdatedEvent(self.session.id, time.time(), text, True))
                        self._set_state(TurnState.PROCESSING_RESPONSE)
                        utterance = text
                        break
            except RecognitionError as e:
                await self._stop_media()
                if not self._is_stale(session_token):
                    self._report_error(e, "capture")
                    self._raise_notice(Notice.error(
                        "Speech recognition stopped",
                        "Listening was interrupted. Type your message or try the microphone again.",
                    ))
                return

            clip = await self._stop_media()
            if utterance is None or self._is_stale(session_token):
                return
            self._reply_task = asyncio.create_task(self._respond(utterance, clip, session_token))
        finally:
            if self._listen_task is asyncio.current_task():
                self._listen_task = None

    def _capture_notice(self, error: Exception) -> Notice:
        if isinstance(error, PermissionDenied):
            return Notice.error(
                "Microphone unavailable",
                "Allow microphone access or type your message instead.",
            )
        return Notice(
            "Voice input not supported",
            "Speech recognition is not available here. Type your message instead.",
        )

    async def _stop_media(self) -> Optional[AudioClip]:
        """Stop capture and recorder together; the tap is released on every path."""
        try:
            await self.capture.stop()
        finally:
            clip = await self.recorder.stop()
        return clip

    # Replying ---------------------------------------------------------- #

    async def _finish_typed_turn(self, text: str, listen_task: Optional[asyncio.Task],
                                 session_token: int) -> None:
        if listen_task is not None and not listen_task.done():
            listen_task.cancel()
            await asyncio.wait([listen_task])
        # Typed turns carry no audio
        await self._stop_media()
        if self._is_stale(session_token):
            return
        await self._respond(text, None, session_token)

    async def _respond(self, text: str, clip: Optional[AudioClip], session_token: int) -> None:
        self._keep_clip(clip)
        history = self.session.history()

        error: Optional[Exception] = None
        reply = None
        try:
            reply = await asyncio.wait_for(
                self.oracle.respond(
                    text,
                    history=history,
                    feedback_request=self.feedback_request,
                    assessment=self.assessment,
                ),
                timeout=self.oracle_timeout,
            )
        except asyncio.TimeoutError:
            error = NetworkFailure(f"No reply within {self.oracle_timeout:.0f}s")
        except (NetworkFailure, MalformedResponse) as e:
            error = e

        if self._is_stale(session_token):
            logger.info("Dropping reply that arrived after the session ended")
            return

        if error is not None or not (reply or "").strip():
            error = error or MalformedResponse("Empty reply")
            logger.error("Feedback oracle failed: %s", error)
            self._report_error(error, "feedback_oracle")
            self._raise_notice(RESPONSE_FAILED)
            self._start_listening()
            return

        self._append(Message.create(text, self.user))
        self._append(Message.create(reply.strip(), self.partner))
        self._begin_speaking(reply.strip())
