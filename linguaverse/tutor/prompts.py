"""
Tutor prompt templates.

Kept apart from the oracle clients so the wording can be edited without
touching request handling.
"""

from typing import Any, Dict, List, Optional
import json

from ..config import TutorPersonality, FLUENCY_MAX, RUBRIC_MAX


class TutorPrompts:
    """Collection of all tutor prompts."""

    @staticmethod
    def persona_context(personality: Optional[TutorPersonality]) -> str:
        """Render a configured personality as prompt context."""
        if personality is None:
            return ""
        lines = [
            f"Emotional tone: {personality.emotional_tone}.",
            f"Role: {personality.role_taking_behavior}.",
            f"Scaffolding: {personality.scaffolding_prompts}.",
        ]
        if personality.custom_context:
            lines.append(personality.custom_context.strip())
        return "\n".join(lines)

    @staticmethod
    def feedback(
        spoken_text: str,
        history: Optional[List[Dict[str, Any]]] = None,
        feedback_request: Optional[str] = None,
        assessment: Optional[Dict[str, float]] = None,
        persona: str = "",
    ) -> str:
        """Conversational reply prompt."""
        parts = [
            "You are an AI language tutor acting as a friendly, casual conversation partner. "
            "Your goal is to help users practice speaking English.",
            "IMPORTANT:\n"
            "- Keep your responses very short and to the point (1-2 sentences).\n"
            "- If the user asks a question, answer it directly before asking a follow-up.\n"
            "- Ask engaging follow-up questions to keep the conversation flowing.\n"
            "- Do not act like a formal tutor unless specifically asked.",
        ]
        if persona:
            parts.append(f"Personality:\n{persona}")
        if history:
            lines = [f"{'Partner' if h['isAI'] else 'User'}: {h['text']}" for h in history]
            parts.append("Conversation so far:\n" + "\n".join(lines))
        parts.append(f'The user has said:\n"{spoken_text}"')
        if assessment:
            parts.append(
                "Here are their recent scores. Use them to subtly guide the conversation, "
                "but do not mention them directly.\n"
                f"- Fluency: {assessment['fluency']}/{FLUENCY_MAX}\n"
                f"- Lexical Richness: {assessment['lexicalRichness']}/{RUBRIC_MAX}"
            )
        if feedback_request:
            parts.append(
                f"The user has a specific request: '{feedback_request}'. "
                "Please prioritize this in your response."
            )
        parts.append('Respond with JSON: {"feedback": "<your short, friendly reply>"}')
        return "\n\n".join(parts)

    @staticmethod
    def assessment() -> str:
        """Rubric scoring prompt; the recording is attached as inline audio."""
        return f"""
You are an expert in evaluating speaking skills based on the Speaking-of-Self rubric.
Analyze the attached speech recording and score:

- fluency: speaking fluency in words per minute, considering pauses (0-{FLUENCY_MAX})
- lexicalRichness: 0-{RUBRIC_MAX}
- reflectiveTurns: 0-{RUBRIC_MAX}
- autobiographicalDepth: 0-{RUBRIC_MAX}
- conversationInitiative: 0-{RUBRIC_MAX}
- narrativeContinuity: 0-{RUBRIC_MAX}

Respond ONLY with a JSON object containing exactly these six numeric fields.
        """.strip()

    @staticmethod
    def topics(interests: str, proficiency_level: str) -> str:
        return f"""
You are an AI conversation starter that helps English language learners practice speaking.
Generate conversation topics based on the user's interests and proficiency level.

Interests: {interests}
Proficiency Level: {proficiency_level}

Respond with JSON: {{"topics": ["<topic>", ...]}}
        """.strip()

    @staticmethod
    def personality(emotional_tone: str, role_taking_behavior: str, scaffolding_prompts: str) -> str:
        payload = {
            "emotionalTone": emotional_tone,
            "roleTakingBehavior": role_taking_behavior,
            "scaffoldingPrompts": scaffolding_prompts,
        }
        return f"""
You are an AI personality configuration expert. Check that the following settings
describe a coherent conversation partner for a language learner.

Settings: {json.dumps(payload, ensure_ascii=False)}

Respond with JSON: {{"success": <true|false>, "message": "<one sentence>"}}
        """.strip()
