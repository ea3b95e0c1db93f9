"""
Error taxonomy for the tutor.

Media and oracle failures are recoverable and surface as notices; only
ConfigurationError aborts startup.
"""


class TutorError(Exception):
    """Base exception for all tutor errors."""


class PermissionDenied(TutorError):
    """Raised when the microphone cannot be acquired."""


class ProviderUnavailable(TutorError):
    """Raised when the platform offers no recognition or synthesis support."""


class RecognitionUnavailable(ProviderUnavailable):
    """Raised when speech recognition is not supported."""


class SynthesisUnavailable(ProviderUnavailable):
    """Raised when speech cannot be synthesized."""


class RecognitionError(TutorError):
    """Raised when the recognition provider fails mid-stream."""


class SilenceTimeout(TutorError):
    """Raised by a recognizer when the provider stream times out without activity."""


class PlaybackError(TutorError):
    """Raised when synthesized audio cannot be played."""


class NetworkFailure(TutorError):
    """Raised when an oracle is unreachable, errors out or times out."""


class MalformedResponse(TutorError):
    """Raised when an oracle response fails schema validation."""


class NoSpeechRecorded(TutorError):
    """Raised when an assessment is finished without any recorded audio."""


class ConfigurationError(TutorError):
    """Raised when required configuration is missing at startup."""
