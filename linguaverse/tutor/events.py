"""
Event-driven notifications for tutoring sessions.

The turn controller emits these; the CLI, the event logger and the metrics
collector listen.
"""
import logging
from abc import ABC
from typing import Dict, Any, List, Callable, Optional
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger("events")


class EventType(str, Enum):
    """Types of tutor events."""
    SESSION_STARTED = "session_started"
    STATE_CHANGED = "state_changed"
    MESSAGE_APPENDED = "message_appended"
    TRANSCRIPT_UPDATED = "transcript_updated"
    PLAYBACK_STARTED = "playback_started"
    PLAYBACK_ENDED = "playback_ended"
    PLAYBACK_FAILED = "playback_failed"
    NOTICE_RAISED = "notice_raised"
    SESSION_ENDED = "session_ended"
    ASSESSMENT_COMPLETED = "assessment_completed"
    ERROR_OCCURRED = "error_occurred"


@dataclass
class TutorEvent(ABC):
    """Base class for all tutor events."""
    event_type: EventType
    session_id: str
    timestamp: float
    data: Dict[str, Any]


@dataclass
class SessionStartedEvent(TutorEvent):
    """Event fired when a conversation begins."""
    def __init__(self, session_id: str, timestamp: float, mode: str, topic: Optional[str]):
        super().__init__(
            event_type=EventType.SESSION_STARTED,
            session_id=session_id,
            timestamp=timestamp,
            data={"mode": mode, "topic": topic}
        )


@dataclass
class StateChangedEvent(TutorEvent):
    """Event fired on every turn state transition."""
    def __init__(self, session_id: str, timestamp: float, previous: str, current: str):
        super().__init__(
            event_type=EventType.STATE_CHANGED,
            session_id=session_id,
            timestamp=timestamp,
            data={"previous": previous, "current": current}
        )


@dataclass
class MessageAppendedEvent(TutorEvent):
    """Event fired when a message joins the conversation."""
    def __init__(self, session_id: str, timestamp: float, message_id: str,
                 speaker: str, role: str, text: str):
        super().__init__(
            event_type=EventType.MESSAGE_APPENDED,
            session_id=session_id,
            timestamp=timestamp,
            data={
                "message_id": message_id,
                "speaker": speaker,
                "role": role,
                "text": text
            }
        )


@dataclass
class TranscriptUpdatedEvent(TutorEvent):
    """Event fired for live transcript text."""
    def __init__(self, session_id: str, timestamp: float, text: str, is_final: bool):
        super().__init__(
            event_type=EventType.TRANSCRIPT_UPDATED,
            session_id=session_id,
            timestamp=timestamp,
            data={"text": text, "is_final": is_final}
        )


@dataclass
class PlaybackStartedEvent(TutorEvent):
    """Event fired when the AI starts speaking."""
    def __init__(self, session_id: str, timestamp: float, text: str):
        super().__init__(
            event_type=EventType.PLAYBACK_STARTED,
            session_id=session_id,
            timestamp=timestamp,
            data={"text": text}
        )


@dataclass
class PlaybackEndedEvent(TutorEvent):
    """Event fired when the AI stops speaking."""
    def __init__(self, session_id: str, timestamp: float, interrupted: bool, muted: bool):
        super().__init__(
            event_type=EventType.PLAYBACK_ENDED,
            session_id=session_id,
            timestamp=timestamp,
            data={"interrupted": interrupted, "muted": muted}
        )


@dataclass
class PlaybackFailedEvent(TutorEvent):
    """Event fired when speech could not be synthesized or played."""
    def __init__(self, session_id: str, timestamp: float, error_type: str, error_message: str):
        super().__init__(
            event_type=EventType.PLAYBACK_FAILED,
            session_id=session_id,
            timestamp=timestamp,
            data={"error_type": error_type, "error_message": error_message}
        )


@dataclass
class NoticeRaisedEvent(TutorEvent):
    """Event fired when the learner should see a notice."""
    def __init__(self, session_id: str, timestamp: float, title: str,
                 description: str, variant: str):
        super().__init__(
            event_type=EventType.NOTICE_RAISED,
            session_id=session_id,
            timestamp=timestamp,
            data={
                "title": title,
                "description": description,
                "variant": variant
            }
        )


@dataclass
class SessionEndedEvent(TutorEvent):
    """Event fired when a conversation ends."""
    def __init__(self, session_id: str, timestamp: float, message_count: int, audio_fragments: int):
        super().__init__(
            event_type=EventType.SESSION_ENDED,
            session_id=session_id,
            timestamp=timestamp,
            data={"message_count": message_count, "audio_fragments": audio_fragments}
        )


@dataclass
class AssessmentCompletedEvent(TutorEvent):
    """Event fired when an assessment has been scored."""
    def __init__(self, session_id: str, timestamp: float, result_id: str, scores: Dict[str, float]):
        super().__init__(
            event_type=EventType.ASSESSMENT_COMPLETED,
            session_id=session_id,
            timestamp=timestamp,
            data={"result_id": result_id, "scores": scores}
        )


@dataclass
class ErrorOccurredEvent(TutorEvent):
    """Event fired when an error occurs."""
    def __init__(self, session_id: str, timestamp: float, error_type: str,
                 error_message: str, component: str):
        super().__init__(
            event_type=EventType.ERROR_OCCURRED,
            session_id=session_id,
            timestamp=timestamp,
            data={
                "error_type": error_type,
                "error_message": error_message,
                "component": component
            }
        )


EventHandler = Callable[[TutorEvent], None]


class TutorEventBus:
    """Event bus for tutor components."""

    def __init__(self):
        self._handlers: Dict[EventType, List[EventHandler]] = {}
        self._global_handlers: List[EventHandler] = []

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """
        Subscribe to specific event type.

        Args:
            event_type: Type of event to listen for
            handler: Function to call when event occurs
        """
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug("Subscribed handler to %s", event_type.value)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Subscribe to all events."""
        self._global_handlers.append(handler)
        logger.debug("Subscribed global handler")

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        if event_type in self._handlers:
            try:
                self._handlers[event_type].remove(handler)
                logger.debug("Unsubscribed handler from %s", event_type.value)
            except ValueError:
                logger.warning("Handler not found for %s", event_type.value)

    def emit(self, event: TutorEvent) -> None:
        """
        Emit an event to all subscribers.

        Handler exceptions are logged and do not reach the emitter.
        """
        logger.debug("Emitting event: %s for session %s", event.event_type.value, event.session_id)

        for handler in list(self._handlers.get(event.event_type, [])):
            try:
                handler(event)
            except Exception as e:
                logger.error("Error in event handler for %s: %s", event.event_type.value, e)

        for handler in list(self._global_handlers):
            try:
                handler(event)
            except Exception as e:
                logger.error("Error in global event handler: %s", e)

    def clear_handlers(self) -> None:
        """Clear all event handlers."""
        self._handlers.clear()
        self._global_handlers.clear()
        logger.debug("Cleared all event handlers")


class EventLogger:
    """Logs all events for debugging."""

    def __init__(self, log_level: int = logging.INFO):
        self.logger = logging.getLogger("event_logger")
        self.log_level = log_level

    def handle_event(self, event: TutorEvent) -> None:
        self.logger.log(self.log_level, "Event: %s | Session: %s | Data: %s",
                        event.event_type.value, event.session_id, event.data)


class SessionMetrics:
    """Collects counts from tutor events."""

    def __init__(self):
        self.reset()

    def handle_event(self, event: TutorEvent) -> None:
        """Update metrics based on event."""
        if event.event_type == EventType.SESSION_STARTED:
            self.sessions_started += 1
        elif event.event_type == EventType.SESSION_ENDED:
            self.sessions_ended += 1
        elif event.event_type == EventType.MESSAGE_APPENDED:
            if event.data.get("role") == "user":
                self.user_messages += 1
            else:
                self.partner_messages += 1
        elif event.event_type == EventType.PLAYBACK_STARTED:
            self.playbacks_started += 1
        elif event.event_type == EventType.PLAYBACK_ENDED and event.data.get("interrupted"):
            self.playbacks_interrupted += 1
        elif event.event_type == EventType.PLAYBACK_FAILED:
            self.playback_failures += 1
        elif event.event_type == EventType.NOTICE_RAISED:
            self.notices_raised += 1
        elif event.event_type == EventType.ASSESSMENT_COMPLETED:
            self.assessments_completed += 1
        elif event.event_type == EventType.ERROR_OCCURRED:
            self.errors_occurred += 1

    def get_metrics(self) -> Dict[str, int]:
        """Get current metrics snapshot."""
        return {
            "sessions_started": self.sessions_started,
            "sessions_ended": self.sessions_ended,
            "user_messages": self.user_messages,
            "partner_messages": self.partner_messages,
            "playbacks_started": self.playbacks_started,
            "playbacks_interrupted": self.playbacks_interrupted,
            "playback_failures": self.playback_failures,
            "notices_raised": self.notices_raised,
            "assessments_completed": self.assessments_completed,
            "errors_occurred": self.errors_occurred,
        }

    def reset(self) -> None:
        """Reset all metrics to zero."""
        self.sessions_started = 0
        self.sessions_ended = 0
        self.user_messages = 0
        self.partner_messages = 0
        self.playbacks_started = 0
        self.playbacks_interrupted = 0
        self.playback_failures = 0
        self.notices_raised = 0
        self.assessments_completed = 0
        self.errors_occurred = 0
