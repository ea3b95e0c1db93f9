"""
LinguaVerse Configuration
=========================

This file contains ALL configuration for the LinguaVerse tutor.
- User settings at the top (things users might want to change)
- Internal constants at the bottom (technical defaults)
"""
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .errors import ConfigurationError


# =============================================================================
# USER SETTINGS - Edit these to customize the tutor
# =============================================================================

# REQUIRED: hosted AI provider credential (read from GEMINI_API_KEY)
GEMINI_API_KEY_ENV = "GEMINI_API_KEY"

# Conversation settings
AI_NAME = "LinguaVerse AI"
LANGUAGE_CODE = "en-US"
ORACLE_TIMEOUT = 45.0

# Speech settings
ENABLE_VOICE = True
START_MUTED = False
TTS_VOICE = "en-US-Neural2-F"

# Topic generation
DEFAULT_INTERESTS = "technology, travel, food, movies, personal growth"
DEFAULT_PROFICIENCY = "Intermediate"
FALLBACK_TOPICS = ["Technology", "Travel", "Food"]

# Logging
LOG_FILE = "./_sessions/linguaverse.log"
LOG_LEVEL = "INFO"


# =============================================================================
# PERSONALITY SYSTEM
# =============================================================================

@dataclass
class TutorPersonality:
    """How the AI partner behaves in conversation."""
    emotional_tone: str = "warm and encouraging"
    role_taking_behavior: str = "casual conversation partner"
    scaffolding_prompts: str = "ask one engaging follow-up question"

    # Custom personality instructions
    custom_context: str = ""

    @classmethod
    def from_preset(cls, preset_name: str) -> 'TutorPersonality':
        """Create personality from preset."""
        presets = {
            "agentic": cls(
                emotional_tone="empathetic and encouraging",
                role_taking_behavior="adaptive partner who guides the conversation",
                scaffolding_prompts="answer questions directly, then ask an engaging follow-up",
            ),
            "non_agentic": cls(
                emotional_tone="neutral",
                role_taking_behavior="purely reactive respondent",
                scaffolding_prompts="none",
            ),
            "peer": cls(
                emotional_tone="friendly",
                role_taking_behavior="fellow learner",
                scaffolding_prompts="share and ask back",
            ),
            "assessment": cls(
                emotional_tone="calm and interested",
                role_taking_behavior="interviewer keeping the learner talking about themselves",
                scaffolding_prompts="ask short open questions about personal experience",
            ),
        }
        return presets.get(preset_name, cls())


# =============================================================================
# INTERNAL CONSTANTS - Don't change these unless you know what you're doing
# =============================================================================

# Audio capture
SAMPLE_RATE = 16000
CHANNELS = 1
FRAME_MS = 100
MIC_OPEN_RETRIES = 3
MIC_RETRY_DELAY = 0.5

# Local speech fallback (espeak)
TTS_PITCH = 55
TTS_AMPLITUDE = 120
TTS_RATE_WPM = 170
ESPEAK_COMMANDS = ("espeak-ng", "espeak")

# Playback commands, tried in order
PLAYER_COMMANDS: Tuple[Tuple[str, ...], ...] = (
    ("aplay", "-q"),
    ("afplay",),
    ("paplay",),
)

# LLM
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
MODEL_NAME = "gemini-2.5-flash"
LLM_TIMEOUT = 60
MAX_OUTPUT_TOKENS = 512

# Assessment rubric ceilings
FLUENCY_MAX = 150
RUBRIC_MAX = 10

# Peer mode
PEER_REPLY_DELAY = (1.0, 2.0)


# =============================================================================
# MAIN CONFIG OBJECT
# =============================================================================

@dataclass
class Config:
    """Main configuration object."""
    gemini_api_key: str
    model_name: str = MODEL_NAME
    llm_timeout: int = LLM_TIMEOUT
    oracle_timeout: float = ORACLE_TIMEOUT
    language_code: str = LANGUAGE_CODE
    enable_voice: bool = ENABLE_VOICE
    start_muted: bool = START_MUTED
    tts_voice: str = TTS_VOICE
    sample_rate: int = SAMPLE_RATE
    channels: int = CHANNELS
    input_device: Optional[int] = None
    log_file: str = LOG_FILE
    log_level: str = LOG_LEVEL
    personality: TutorPersonality = field(default_factory=TutorPersonality)


def get_config() -> Config:
    """
    Load configuration from the environment.

    Raises:
        ConfigurationError: If the AI provider credential is missing
    """
    api_key = (os.getenv(GEMINI_API_KEY_ENV) or "").strip()
    if not api_key:
        raise ConfigurationError(
            f"Please set {GEMINI_API_KEY_ENV} in the environment before starting LinguaVerse"
        )

    config = Config(gemini_api_key=api_key)
    config.model_name = os.getenv("GEMINI_MODEL") or MODEL_NAME
    config.log_level = os.getenv("LINGUAVERSE_LOG_LEVEL") or LOG_LEVEL
    config.log_file = os.getenv("LINGUAVERSE_LOG_FILE") or LOG_FILE

    device = os.getenv("LINGUAVERSE_INPUT_DEVICE")
    if device:
        try:
            config.input_device = int(device)
        except ValueError:
            raise ConfigurationError(f"LINGUAVERSE_INPUT_DEVICE must be an integer, got {device!r}")

    return config
