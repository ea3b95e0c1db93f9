"""
Clients for the hosted AI oracles.

Each oracle is stateless: it validates its input, makes one LLM request and
validates the output. Timeouts and retries are the caller's business.
"""
import asyncio
import base64
import logging
import random
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from ..config import (
    TutorPersonality, DEFAULT_INTERESTS, DEFAULT_PROFICIENCY, FALLBACK_TOPICS, PEER_REPLY_DELAY,
)
from ..errors import MalformedResponse, NetworkFailure, SynthesisUnavailable
from ..infrastructure.audio.processing import decode_data_uri, encode_data_uri
from ..infrastructure.llm.client import GeminiRestClient, inline_part
from .prompts import TutorPrompts
from .schemas import (
    AssessmentInput, AssessmentScores, FeedbackInput, FeedbackOutput,
    PersonalityInput, PersonalityOutput, SpeechInput, SpeechOutput, TopicInput, TopicOutput,
)

logger = logging.getLogger("oracles")

M = TypeVar("M", bound=BaseModel)


def parse_output(model: Type[M], data: Dict[str, Any]) -> M:
    """Validate an oracle response, mapping schema errors to MalformedResponse."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.warning("%s failed validation: %s", model.__name__, e)
        raise MalformedResponse(f"{model.__name__} failed validation: {e.error_count()} error(s)") from e


class FeedbackOracle:
    """Short conversational replies from the tutor."""

    def __init__(self, client: GeminiRestClient, personality: Optional[TutorPersonality] = None):
        self.client = client
        self.personality = personality

    async def respond(self,
                      spoken_text: str,
                      history: Optional[List[Dict[str, Any]]] = None,
                      feedback_request: Optional[str] = None,
                      assessment: Optional[AssessmentScores] = None) -> str:
        """
        Generate a reply to what the learner said.

        Args:
            spoken_text: The learner's utterance
            history: Prior messages as ``{"text", "isAI"}`` dicts
            feedback_request: Optional directive for the reply
            assessment: Optional recent scores to steer the conversation

        Returns:
            The reply text

        Raises:
            NetworkFailure: If the LLM cannot be reached
            MalformedResponse: If the reply is missing or empty
        """
        request = FeedbackInput(
            spoken_text=spoken_text,
            feedback_request=feedback_request,
            history=history or None,
            assessment=assessment,
        ).to_wire()

        prompt = TutorPrompts.feedback(
            spoken_text=request["spokenText"],
            history=request.get("history"),
            feedback_request=request.get("feedbackRequest"),
            assessment=request.get("assessment"),
            persona=TutorPrompts.persona_context(self.personality),
        )
        logger.debug("Requesting feedback for %r (history=%d)", spoken_text, len(history or []))
        data = await asyncio.to_thread(self.client.generate_json, prompt)
        output = parse_output(FeedbackOutput, data)
        return output.feedback.strip()


class PeerResponder:
    """Stand-in for a fellow learner: a canned reply after a short pause."""

    REPLY = "That's interesting! Tell me more about that."

    def __init__(self, reply: str = REPLY, delay: Tuple[float, float] = PEER_REPLY_DELAY,
                 rng: Optional[random.Random] = None):
        self.reply = reply
        self.delay = delay
        self._rng = rng or random.Random()

    async def respond(self, spoken_text: str, history=None, feedback_request=None, assessment=None) -> str:
        await asyncio.sleep(self._rng.uniform(*self.delay))
        return self.reply


class AssessmentOracle:
    """Scores a speech recording against the six-metric rubric."""

    def __init__(self, client: GeminiRestClient):
        self.client = client

    async def score(self, speech_data_uri: str) -> AssessmentScores:
        """
        Score one recording, sent once.

        Raises:
            ValueError: If the data URI is not base64 audio
            NetworkFailure: If the LLM cannot be reached
            MalformedResponse: If the scores fail validation
        """
        try:
            request = AssessmentInput(speech_data_uri=speech_data_uri)
        except ValidationError as e:
            raise ValueError("speechDataUri must be a base64 data URI") from e

        mime_type, payload = decode_data_uri(request.speech_data_uri)
        parts = [inline_part(mime_type, base64.b64encode(payload).decode("ascii"))]
        logger.info("Scoring %d bytes of %s", len(payload), mime_type)

        data = await asyncio.to_thread(
            self.client.generate_json, TutorPrompts.assessment(), parts, 0.0
        )
        return parse_output(AssessmentScores, data)


class TopicOracle:
    """Suggests conversation topics for a learner."""

    def __init__(self, client: GeminiRestClient):
        self.client = client

    async def generate(self, interests: Optional[str] = None,
                       proficiency_level: Optional[str] = None) -> List[str]:
        """Topics for the given interests; falls back to a fixed list on any oracle failure."""
        request = TopicInput(
            interests=interests or DEFAULT_INTERESTS,
            proficiency_level=proficiency_level or DEFAULT_PROFICIENCY,
        )
        prompt = TutorPrompts.topics(request.interests, request.proficiency_level)
        try:
            data = await asyncio.to_thread(self.client.generate_json, prompt)
            topics = [t.strip() for t in parse_output(TopicOutput, data).topics if t.strip()]
        except (NetworkFailure, MalformedResponse) as e:
            logger.warning("Topic generation failed, using fallback topics: %s", e)
            return list(FALLBACK_TOPICS)
        return topics or list(FALLBACK_TOPICS)


class SpeechOracle:
    """Text-to-speech: text in, WAV data URI out."""

    def __init__(self, synthesizer):
        self.synthesizer = synthesizer

    async def synthesize(self, text: str) -> SpeechOutput:
        """
        Raises:
            SynthesisUnavailable: If the synthesizer cannot produce audio
        """
        try:
            request = SpeechInput(text=text)
        except ValidationError as e:
            raise SynthesisUnavailable("Nothing to synthesize") from e
        wav_bytes = await self.synthesizer.synthesize(request.text)
        return SpeechOutput(audio_data_uri=encode_data_uri(wav_bytes, "audio/wav"))


class PersonalityOracle:
    """Checks and applies a tutor personality."""

    def __init__(self, client: GeminiRestClient):
        self.client = client

    async def configure(self, emotional_tone: str, role_taking_behavior: str,
                        scaffolding_prompts: str) -> Tuple[PersonalityOutput, TutorPersonality]:
        request = PersonalityInput(
            emotional_tone=emotional_tone,
            role_taking_behavior=role_taking_behavior,
            scaffolding_prompts=scaffolding_prompts,
        )
        prompt = TutorPrompts.personality(
            request.emotional_tone, request.role_taking_behavior, request.scaffolding_prompts
        )
        data = await asyncio.to_thread(self.client.generate_json, prompt)
        output = parse_output(PersonalityOutput, data)
        personality = TutorPersonality(
            emotional_tone=request.emotional_tone,
            role_taking_behavior=request.role_taking_behavior,
            scaffolding_prompts=request.scaffolding_prompts,
        )
        logger.info("Personality configured (success=%s): %s", output.success, output.message)
        return output, personality
