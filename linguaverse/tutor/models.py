"""
Data models for tutoring sessions.
"""
import itertools
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Any

from ..config import AI_NAME
from ..infrastructure.audio.processing import AudioClip


def now_ms() -> int:
    return int(time.time() * 1000)


class SpeakerRole(str, Enum):
    """Who produced a message."""
    USER = "user"
    AI_AGENT = "ai_agent"
    PEER = "peer"


@dataclass(frozen=True)
class Speaker:
    """A conversation participant with display metadata."""
    id: str
    name: str
    role: SpeakerRole
    avatar_url: Optional[str] = None

    @property
    def is_ai(self) -> bool:
        return self.role == SpeakerRole.AI_AGENT


DEFAULT_USER = Speaker(id="1", name="User", role=SpeakerRole.USER)
AI_TUTOR = Speaker(id="ai", name=AI_NAME, role=SpeakerRole.AI_AGENT)
PEER_PARTNER = Speaker(id="peer", name="Alex", role=SpeakerRole.PEER)


_message_seq = itertools.count(1)


@dataclass(frozen=True)
class Message:
    """A single line of conversation."""
    id: str
    text: str
    timestamp: int
    speaker: Speaker

    @classmethod
    def create(cls, text: str, speaker: Speaker, timestamp: Optional[int] = None) -> 'Message':
        return cls(
            id=f"msg-{next(_message_seq)}-{uuid.uuid4().hex[:8]}",
            text=text,
            timestamp=now_ms() if timestamp is None else timestamp,
            speaker=speaker,
        )

    @property
    def from_user(self) -> bool:
        return self.speaker.role == SpeakerRole.USER

    def to_history(self) -> Dict[str, Any]:
        """Wire form for the feedback oracle; anyone but the user is the other party."""
        return {"text": self.text, "isAI": not self.from_user}


class ConversationMode(str, Enum):
    """Practice styles offered to the learner."""
    AGENTIC = "agentic"
    NON_AGENTIC = "non_agentic"
    PEER = "peer"
    ASSESSMENT = "assessment"


class TurnState(str, Enum):
    """Whose turn it is; governs which media collaborator may be active."""
    IDLE = "idle"
    USER_RECORDING = "user_recording"
    PROCESSING_RESPONSE = "processing_response"
    AI_SPEAKING = "ai_speaking"
    SESSION_ENDED = "session_ended"


@dataclass
class ConversationSession:
    """In-memory record of one conversation."""
    mode: ConversationMode
    topic: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    messages: List[Message] = field(default_factory=list)
    audio_fragments: List[AudioClip] = field(default_factory=list)
    started_at: int = field(default_factory=now_ms)
    ended_at: Optional[int] = None

    def append(self, message: Message) -> Message:
        """Append a message, never letting timestamps run backwards."""
        if self.messages and message.timestamp < self.messages[-1].timestamp:
            message = Message(message.id, message.text, self.messages[-1].timestamp, message.speaker)
        self.messages.append(message)
        return message

    @property
    def user_messages(self) -> List[Message]:
        return [m for m in self.messages if m.from_user]

    @property
    def partner_messages(self) -> List[Message]:
        return [m for m in self.messages if not m.from_user]

    @property
    def is_ended(self) -> bool:
        return self.ended_at is not None

    def history(self) -> List[Dict[str, Any]]:
        return [m.to_history() for m in self.messages]

    def stats(self) -> 'SessionStats':
        return SessionStats.from_messages(self.messages)


@dataclass(frozen=True)
class SessionStats:
    """Turn and word counts for a conversation."""
    total_turns: int = 0
    user_turns: int = 0
    ai_turns: int = 0
    user_word_count: int = 0

    @classmethod
    def from_messages(cls, messages: List[Message]) -> 'SessionStats':
        user = [m for m in messages if m.from_user]
        return cls(
            total_turns=len(messages),
            user_turns=len(user),
            ai_turns=len(messages) - len(user),
            user_word_count=sum(len(m.text.split()) for m in user),
        )


@dataclass(frozen=True)
class AssessmentResult:
    """Six rubric scores for one speaking sample."""
    id: str
    user_id: str
    date: int
    fluency: float
    lexical_richness: float
    reflective_turns: float
    autobiographical_depth: float
    conversation_initiative: float
    narrative_continuity: float

    @classmethod
    def from_scores(cls, scores, user_id: str = DEFAULT_USER.id) -> 'AssessmentResult':
        moment = datetime.now(timezone.utc)
        return cls(
            id=moment.isoformat(),
            user_id=user_id,
            date=int(moment.timestamp() * 1000),
            fluency=scores.fluency,
            lexical_richness=scores.lexical_richness,
            reflective_turns=scores.reflective_turns,
            autobiographical_depth=scores.autobiographical_depth,
            conversation_initiative=scores.conversation_initiative,
            narrative_continuity=scores.narrative_continuity,
        )

    def scores(self) -> Dict[str, float]:
        return {
            "fluency": self.fluency,
            "lexical_richness": self.lexical_richness,
            "reflective_turns": self.reflective_turns,
            "autobiographical_depth": self.autobiographical_depth,
            "conversation_initiative": self.conversation_initiative,
            "narrative_continuity": self.narrative_continuity,
        }


@dataclass(frozen=True)
class Notice:
    """A toast-style message for the learner."""
    title: str
    description: str
    variant: str = "default"

    @property
    def is_destructive(self) -> bool:
        return self.variant == "destructive"

    @classmethod
    def error(cls, title: str, description: str) -> 'Notice':
        return cls(title=title, description=description, variant="destructive")


@dataclass(frozen=True)
class ScoreBar:
    """One rendered assessment metric."""
    key: str
    label: str
    value: float
    max: float
    percent: float
