"""
Streaming speech-to-text using Google Cloud Speech.
"""
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from google.api_core import exceptions as google_exceptions
from google.cloud import speech

from ....config import LANGUAGE_CODE, SAMPLE_RATE
from ....errors import RecognitionError, SilenceTimeout

logger = logging.getLogger("speech_stt")


@dataclass(frozen=True)
class TranscriptEvent:
    """A recognized fragment; interim text is a cumulative preview."""
    text: str
    is_final: bool


class GoogleStreamingRecognizer:
    """One streaming_recognize call per ``stream()``; the caller restarts on SilenceTimeout."""

    def __init__(self,
                 api_key: Optional[str] = None,
                 language_code: str = LANGUAGE_CODE,
                 sample_rate: int = SAMPLE_RATE,
                 client: Optional[speech.SpeechAsyncClient] = None):
        self.language_code = language_code
        self.sample_rate = sample_rate
        self._api_key = api_key
        self._client = client

    @property
    def client(self) -> speech.SpeechAsyncClient:
        if self._client is None:
            options = {"api_key": self._api_key} if self._api_key else None
            self._client = speech.SpeechAsyncClient(client_options=options)
        return self._client

    def _streaming_config(self, sample_rate: int) -> speech.StreamingRecognitionConfig:
        return speech.StreamingRecognitionConfig(
            config=speech.RecognitionConfig(
                encoding=speech.RecognitionConfig.AudioEncoding.LINEAR16,
                sample_rate_hertz=sample_rate,
                language_code=self.language_code,
                enable_automatic_punctuation=True,
            ),
            interim_results=True,
        )

    async def stream(self, tap, sample_rate: Optional[int] = None) -> AsyncIterator[TranscriptEvent]:
        """
        Recognize audio read from a microphone tap.

        Args:
            tap: Object with an async ``read()`` returning PCM16 chunks, None when closed
            sample_rate: Rate of the chunks; defaults to the recognizer's rate

        Yields:
            TranscriptEvent for each interim or final result

        Raises:
            SilenceTimeout: When the provider ends the stream for inactivity or length
            RecognitionError: On any other provider failure
        """
        config = self._streaming_config(sample_rate or self.sample_rate)

        async def requests():
            yield speech.StreamingRecognizeRequest(streaming_config=config)
            while True:
                chunk = await tap.read()
                if chunk is None:
                    return
                yield speech.StreamingRecognizeRequest(audio_content=chunk)

        try:
            responses = await self.client.streaming_recognize(requests=requests())
            async for response in responses:
                preview = []
                for result in response.results:
                    if not result.alternatives:
                        continue
                    text = result.alternatives[0].transcript.strip()
                    if not text:
                        continue
                    if result.is_final:
                        yield TranscriptEvent(text=text, is_final=True)
                    else:
                        preview.append(text)
                if preview:
                    yield TranscriptEvent(text=" ".join(preview), is_final=False)
        except (google_exceptions.OutOfRange, google_exceptions.DeadlineExceeded) as e:
            logger.debug("Recognition stream timed out: %s", e)
            raise SilenceTimeout(str(e)) from e
        except google_exceptions.GoogleAPICallError as e:
            logger.error("Speech recognition failed: %s", e)
            raise RecognitionError(str(e)) from e
