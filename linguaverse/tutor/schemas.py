"""
Wire schemas for the AI oracles.

Field names are snake_case in Python and camelCase on the wire.
"""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..config import DEFAULT_INTERESTS, DEFAULT_PROFICIENCY


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class HistoryEntry(WireModel):
    text: str
    is_ai: bool = Field(alias="isAI")


class AssessmentScores(WireModel):
    """The six rubric metrics."""
    fluency: float = Field(ge=0, description="Words per minute")
    lexical_richness: float = Field(ge=0, le=10)
    reflective_turns: float = Field(ge=0, le=10)
    autobiographical_depth: float = Field(ge=0, le=10)
    conversation_initiative: float = Field(ge=0, le=10)
    narrative_continuity: float = Field(ge=0, le=10)


class FeedbackInput(WireModel):
    spoken_text: str = Field(min_length=1)
    feedback_request: Optional[str] = None
    history: Optional[List[HistoryEntry]] = None
    assessment: Optional[AssessmentScores] = None

    @field_validator("spoken_text")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("spokenText must not be blank")
        return v


class FeedbackOutput(WireModel):
    feedback: str = Field(min_length=1)


class AssessmentInput(WireModel):
    speech_data_uri: str = Field(pattern=r"^data:[\w.+-]+/[\w.+-]+(;[\w-]+=[\w.-]+)*;base64,")


class TopicInput(WireModel):
    interests: str = DEFAULT_INTERESTS
    proficiency_level: str = DEFAULT_PROFICIENCY


class TopicOutput(WireModel):
    topics: List[str] = Field(min_length=1)


class SpeechInput(WireModel):
    text: str = Field(min_length=1)


class SpeechOutput(WireModel):
    audio_data_uri: str = Field(pattern=r"^data:audio/wav;base64,")


class PersonalityInput(WireModel):
    emotional_tone: str
    role_taking_behavior: str
    scaffolding_prompts: str


class PersonalityOutput(WireModel):
    success: bool
    message: str
