"""
Shared microphone device with reference-counted taps.

Transcript capture and the audio recorder each open a tap on the same
device. The PyAudio stream opens with the first tap and closes with the last;
both run in worker threads so PortAudio never blocks the event loop.
"""
import asyncio
import logging
import time
from typing import AsyncIterator, List, Optional

from ...config import SAMPLE_RATE, CHANNELS, FRAME_MS, MIC_OPEN_RETRIES, MIC_RETRY_DELAY
from ...errors import PermissionDenied, ProviderUnavailable
from ...utils import load_pyaudio, with_suppressed_audio_warnings

logger = logging.getLogger("microphone")

_CLOSED = None


class MicrophoneTap:
    """One consumer's view of the microphone: an async stream of PCM16 chunks."""

    def __init__(self, microphone: 'Microphone'):
        self._microphone = microphone
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    @property
    def sample_rate(self) -> int:
        return self._microphone.sample_rate

    @property
    def channels(self) -> int:
        return self._microphone.channels

    def feed(self, chunk: bytes) -> None:
        if not self.closed:
            self._queue.put_nowait(chunk)

    async def read(self) -> Optional[bytes]:
        """Next chunk, or None once the tap is closed and drained."""
        return await self._queue.get()

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._queue.get()
            if chunk is _CLOSED:
                return
            yield chunk

    def close(self) -> None:
        """Release this tap. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_CLOSED)
        self._microphone.release(self)


class Microphone:
    """PyAudio input stream in callback mode, shared between taps."""

    def __init__(self,
                 device_index: Optional[int] = None,
                 sample_rate: int = SAMPLE_RATE,
                 channels: int = CHANNELS,
                 frame_ms: int = FRAME_MS,
                 max_retries: int = MIC_OPEN_RETRIES,
                 retry_delay: float = MIC_RETRY_DELAY,
                 pyaudio_module=None):
        self.device_index = device_index
        self.sample_rate = sample_rate
        self.channels = channels
        self.frame_size = int(sample_rate * frame_ms / 1000)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._pyaudio = pyaudio_module
        self._pa = None
        self._stream = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._taps: List[MicrophoneTap] = []
        self._open_lock = asyncio.Lock()
        self._closing: Optional[asyncio.Future] = None

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    @property
    def tap_count(self) -> int:
        return len(self._taps)

    async def open_tap(self) -> MicrophoneTap:
        """
        Open a new tap, opening the device if this is the first one.

        Raises:
            ProviderUnavailable: If PyAudio is not installed
            PermissionDenied: If the device cannot be opened after retries
        """
        async with self._open_lock:
            if self._stream is None:
                await self.wait_closed()
                self._loop = asyncio.get_running_loop()
                opening = asyncio.ensure_future(asyncio.to_thread(self._open_stream))
                try:
                    await asyncio.shield(opening)
                except asyncio.CancelledError:
                    # The worker thread finishes the open; nobody will own the stream
                    await asyncio.wait([opening])
                    if opening.exception() is not None:
                        logger.info("Microphone open failed after cancellation: %s", opening.exception())
                    else:
                        self._begin_close()
                    raise
            tap = MicrophoneTap(self)
            self._taps.append(tap)
            logger.debug("Opened microphone tap (%d active)", len(self._taps))
            return tap

    def release(self, tap: MicrophoneTap) -> None:
        if tap in self._taps:
            self._taps.remove(tap)
            logger.debug("Released microphone tap (%d active)", len(self._taps))
        if not self._taps:
            self._begin_close()

    def close(self) -> None:
        """Close every tap and start closing the device."""
        for tap in list(self._taps):
            tap.close()
        self._begin_close()

    async def wait_closed(self) -> None:
        """Wait for a device close running in the background to finish."""
        closing, self._closing = self._closing, None
        if closing is not None:
            await closing

    async def aclose(self) -> None:
        """Close every tap and wait until the device is released."""
        self.close()
        await self.wait_closed()

    def _callback(self, in_data, frame_count, time_info, status):
        # Runs on the PortAudio thread
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._dispatch, in_data)
        return (None, self._pyaudio.paContinue)

    def _dispatch(self, chunk: bytes) -> None:
        for tap in list(self._taps):
            tap.feed(chunk)

    @with_suppressed_audio_warnings
    def _open_stream(self) -> None:
        if self._pyaudio is None:
            self._pyaudio = load_pyaudio()
        if self._pyaudio is None:
            raise ProviderUnavailable("PyAudio is not installed; voice input is unavailable")

        logger.info("Attempting to open microphone: device=%s rate=%d channels=%d frame=%d",
                    self.device_index, self.sample_rate, self.channels, self.frame_size)

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            if attempt > 0:
                logger.info("Retry attempt %d/%d", attempt + 1, self.max_retries)
                time.sleep(self.retry_delay)
            try:
                if self._pa is None:
                    self._pa = self._pyaudio.PyAudio()
                self._stream = self._pa.open(
                    format=self._pyaudio.paInt16,
                    channels=self.channels,
                    rate=self.sample_rate,
                    input=True,
                    input_device_index=self.device_index,
                    frames_per_buffer=self.frame_size,
                    stream_callback=self._callback,
                )
                self._stream.start_stream()
                logger.info("Microphone opened successfully")
                return
            except (OSError, IOError, ValueError) as e:
                last_error = e
                logger.error("Attempt %d failed to open microphone: %s", attempt + 1, e)

        self._terminate()
        raise PermissionDenied(f"Could not open microphone: {last_error}")

    def _begin_close(self) -> None:
        """Detach the stream now and stop it off the event loop."""
        stream, self._stream = self._stream, None
        pa, self._pa = self._pa, None
        if stream is None and pa is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._close_device(stream, pa)
            return
        self._closing = loop.run_in_executor(None, self._close_device, stream, pa)

    def _close_device(self, stream, pa) -> None:
        # Blocks inside PortAudio
        if stream is not None:
            try:
                stream.stop_stream()
                stream.close()
            except OSError as e:
                logger.warning("Error closing microphone stream: %s", e)
            logger.info("Microphone closed")
        if pa is not None:
            pa.terminate()

    def _terminate(self) -> None:
        pa, self._pa = self._pa, None
        if pa is not None:
            pa.terminate()
