"""
LinguaVerse: spoken English practice with an AI conversation partner.

Talk with a tutor by voice or text, get short conversational replies, and
take a speaking assessment scored on the Speaking-of-Self rubric.
"""

__version__ = "1.0.0"

# Main entry points
from .tutor.controller import TurnController
from .tutor.assessment import AssessmentSession
from .tutor.models import ConversationMode, TurnState

__all__ = ["TurnController", "AssessmentSession", "ConversationMode", "TurnState"]
