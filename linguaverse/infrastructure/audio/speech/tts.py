"""
Text-to-speech using Google Cloud TTS, with espeak as a local fallback,
and WAV playback through a command line audio player.
"""
import asyncio
import logging
import os
import shutil
import tempfile
from typing import Optional, Sequence, Tuple

from google.api_core import exceptions as google_exceptions
from google.cloud import texttospeech

from ....config import (
    LANGUAGE_CODE, TTS_VOICE, TTS_PITCH, TTS_AMPLITUDE, TTS_RATE_WPM,
    ESPEAK_COMMANDS, PLAYER_COMMANDS, SAMPLE_RATE,
)
from ....errors import PlaybackError, SynthesisUnavailable

logger = logging.getLogger("speech_tts")


class CloudSpeechSynthesizer:
    """Google Cloud Text-to-Speech returning LINEAR16 WAV bytes."""

    def __init__(self,
                 api_key: Optional[str] = None,
                 voice: str = TTS_VOICE,
                 language_code: str = LANGUAGE_CODE,
                 sample_rate: int = SAMPLE_RATE,
                 client: Optional[texttospeech.TextToSpeechAsyncClient] = None):
        self.voice = voice
        self.language_code = language_code
        self.sample_rate = sample_rate
        self._api_key = api_key
        self._client = client

    @property
    def client(self) -> texttospeech.TextToSpeechAsyncClient:
        if self._client is None:
            options = {"api_key": self._api_key} if self._api_key else None
            self._client = texttospeech.TextToSpeechAsyncClient(client_options=options)
        return self._client

    async def synthesize(self, text: str) -> bytes:
        """
        Synthesize text to WAV.

        Raises:
            SynthesisUnavailable: If the service rejects the request or is unreachable
        """
        try:
            response = await self.client.synthesize_speech(
                input=texttospeech.SynthesisInput(text=text),
                voice=texttospeech.VoiceSelectionParams(language_code=self.language_code, name=self.voice),
                audio_config=texttospeech.AudioConfig(
                    audio_encoding=texttospeech.AudioEncoding.LINEAR16,
                    sample_rate_hertz=self.sample_rate,
                ),
            )
        except google_exceptions.GoogleAPICallError as e:
            logger.error("Google TTS failed: %s", e)
            raise SynthesisUnavailable(f"Google TTS failed: {e}") from e

        if not response.audio_content:
            raise SynthesisUnavailable("Google TTS returned no audio")
        return response.audio_content


class EspeakSynthesizer:
    """Local espeak synthesis; no network call."""

    def __init__(self,
                 rate_wpm: int = TTS_RATE_WPM,
                 pitch: int = TTS_PITCH,
                 amplitude: int = TTS_AMPLITUDE,
                 commands: Sequence[str] = ESPEAK_COMMANDS):
        self.rate_wpm = rate_wpm
        self.pitch = pitch
        self.amplitude = amplitude
        self.executable = next((c for c in commands if shutil.which(c)), None)

    @property
    def available(self) -> bool:
        return self.executable is not None

    async def synthesize(self, text: str) -> bytes:
        if not self.available:
            raise SynthesisUnavailable("espeak is not installed")

        proc = await asyncio.create_subprocess_exec(
            self.executable, "--stdout",
            "-s", str(self.rate_wpm), "-p", str(self.pitch), "-a", str(self.amplitude),
            text,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0 or not stdout:
            raise SynthesisUnavailable(f"espeak failed: {stderr.decode(errors='replace').strip()}")
        return stdout


def find_player(commands: Sequence[Tuple[str, ...]] = PLAYER_COMMANDS) -> Optional[Tuple[str, ...]]:
    """First installed player command, e.g. ('aplay', '-q')."""
    for command in commands:
        if shutil.which(command[0]):
            return command
    return None


def _remove_file(path: str) -> None:
    try:
        os.unlink(path)
    except OSError as e:
        logger.warning("Could not remove temporary audio file %s: %s", path, e)


class SubprocessAudioOutput:
    """Plays WAV bytes through aplay/afplay/paplay; ``stop()`` terminates at once."""

    def __init__(self, command: Optional[Tuple[str, ...]] = None):
        self.command = command or find_player()
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._stopped = False

    @property
    def is_playing(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def play(self, wav_bytes: bytes) -> bool:
        """
        Play audio to completion.

        Returns:
            True if playback finished, False if it was stopped

        Raises:
            PlaybackError: If no player exists or the player fails
        """
        if self.command is None:
            raise PlaybackError("No audio player found (tried aplay, afplay, paplay)")

        wav_path = None
        self._stopped = False
        try:
            try:
                with tempfile.NamedTemporaryFile(suffix=".wav", delete=False) as tmp_file:
                    wav_path = tmp_file.name
                    tmp_file.write(wav_bytes)
            except OSError as e:
                raise PlaybackError(f"Could not write audio to a temporary file: {e}") from e

            try:
                self._proc = await asyncio.create_subprocess_exec(
                    *self.command, wav_path,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                raise PlaybackError(f"Could not start {self.command[0]}: {e}") from e

            _, stderr = await self._proc.communicate()
            if self._stopped:
                return False
            if self._proc.returncode != 0:
                raise PlaybackError(
                    f"{self.command[0]} exited with {self._proc.returncode}: "
                    f"{stderr.decode(errors='replace').strip()}"
                )
            return True
        finally:
            self._proc = None
            if wav_path is not None:
                _remove_file(wav_path)

    def stop(self) -> None:
        proc = self._proc
        if proc is not None and proc.returncode is None:
            self._stopped = True
            try:
                proc.terminate()
            except ProcessLookupError:
                logger.debug("Player already exited")
