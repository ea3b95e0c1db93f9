"""Tutor components.

Business logic for spoken practice conversations and speaking assessments:
the turn controller, its media services, oracle clients and events.
"""

# Turn controller
from .controller import TurnController, opening_line, feedback_request_for

# Assessment
from .assessment import AssessmentSession, AssessmentPhase, score_bars

# Data models
from .models import (
    SpeakerRole, Speaker, Message, ConversationMode, ConversationSession,
    AssessmentResult, TurnState, Notice, ScoreBar, SessionStats,
    DEFAULT_USER, AI_TUTOR, PEER_PARTNER,
)

# Services
from .services import TranscriptCapture, AudioRecorder, SpeechSynthesisPlayer, PlaybackEvent

# Oracles
from .oracles import (
    FeedbackOracle, PeerResponder, AssessmentOracle, TopicOracle, SpeechOracle, PersonalityOracle,
)

# Event system
from .events import (
    TutorEventBus, EventLogger, SessionMetrics, EventType, TutorEvent,
)

__all__ = [
    "TurnController", "opening_line", "feedback_request_for",
    "AssessmentSession", "AssessmentPhase", "score_bars",
    "SpeakerRole", "Speaker", "Message", "ConversationMode", "ConversationSession",
    "AssessmentResult", "TurnState", "Notice", "ScoreBar", "SessionStats",
    "DEFAULT_USER", "AI_TUTOR", "PEER_PARTNER",
    "TranscriptCapture", "AudioRecorder", "SpeechSynthesisPlayer", "PlaybackEvent",
    "FeedbackOracle", "PeerResponder", "AssessmentOracle", "TopicOracle", "SpeechOracle",
    "PersonalityOracle",
    "TutorEventBus", "EventLogger", "SessionMetrics", "EventType", "TutorEvent",
]
