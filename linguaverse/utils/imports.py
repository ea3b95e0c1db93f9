"""
Utilities for noisy native audio libraries.

PortAudio and ALSA print device probing chatter straight to file descriptor 2,
which Python-level redirection cannot catch.
"""
import os
import functools
import logging

logger = logging.getLogger("microphone")

os.environ.setdefault("JACK_NO_START_SERVER", "1")

# Google Cloud gRPC warnings
os.environ.setdefault("GRPC_VERBOSITY", "ERROR")
os.environ.setdefault("GLOG_minloglevel", "2")


def with_suppressed_audio_warnings(func):
    """
    Run a function with stderr redirected to /dev/null at the descriptor level.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            original_stderr_fd = os.dup(2)
            null_fd = os.open(os.devnull, os.O_WRONLY)
            os.dup2(null_fd, 2)
            os.close(null_fd)
        except OSError as e:
            logger.debug("Could not redirect stderr: %s", e)
            original_stderr_fd = None

        try:
            return func(*args, **kwargs)
        finally:
            if original_stderr_fd is not None:
                os.dup2(original_stderr_fd, 2)
                os.close(original_stderr_fd)

    return wrapper


def load_pyaudio():
    """
    Import PyAudio lazily with native warnings suppressed.

    Returns:
        The pyaudio module, or None if it is not installed
    """
    try:
        return with_suppressed_audio_warnings(_import_pyaudio)()
    except ImportError as e:
        logger.info("PyAudio not available: %s", e)
        return None


def _import_pyaudio():
    import pyaudio
    return pyaudio
