"""Callback-driven audio capture that emits fixed-duration chunks."""

import time
import logging
import threading
from typing import Callable, List, Optional

import numpy as np
import pyaudio

from ..errors import DeviceOpenError
from ..models.audio import BYTES_PER_SAMPLE, AudioChunk, AudioStats, CaptureSession, DeviceDescriptor

logger = logging.getLogger(__name__)


class ChunkFramer:
    """Turns variable-size callback buffers into fixed-size mono chunks.

    Multi-channel int16 input is downmixed to mono by averaging channels.
    Leftover samples shorter than one chunk are kept until the next buffer and
    dropped by ``discard``.
    """

    def __init__(self, capture_session: CaptureSession, chunk_frames: int,
                 sample_rate: int, channels: int = 1):
        self.capture_session = capture_session
        self.chunk_frames = chunk_frames
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_bytes = chunk_frames * BYTES_PER_SAMPLE
        self._pending = bytearray()
        self.peak_level = 0.0

    def feed(self, in_data: bytes) -> List[AudioChunk]:
        samples = np.frombuffer(in_data, dtype=np.int16)
        if self.channels > 1:
            usable = len(samples) - len(samples) % self.channels
            samples = samples[:usable].reshape(-1, self.channels).mean(axis=1).astype(np.int16)
        if len(samples):
            self.peak_level = float(np.abs(samples.astype(np.int32)).max()) / 32768.0
        self._pending.extend(samples.tobytes())

        chunks = []
        now = time.time()
        while len(self._pending) >= self.chunk_bytes:
            data = bytes(self._pending[:self.chunk_bytes])
            del self._pending[:self.chunk_bytes]
            chunks.append(AudioChunk(
                capture_session_id=self.capture_session.session_id,
                sequence_number=self.capture_session.take_sequence(),
                data=data,
                sample_rate=self.sample_rate,
                timestamp=now,
            ))
        return chunks

    def discard(self) -> int:
        """Drop the trailing partial chunk; returns the number of bytes dropped."""
        dropped = len(self._pending)
        self._pending.clear()
        return dropped


class CaptureSource:
    """Owns one PortAudio input stream and hands chunks to a non-blocking sink."""

    def __init__(
        self,
        chunk_sink: Callable[[AudioChunk], object],
        sample_rate: int = 16000,
        chunk_duration_ms: int = 100,
        channels: int = 1,
        audio_interface_factory: Callable[[], pyaudio.PyAudio] = pyaudio.PyAudio,
    ):
        """Initialize capture source.

        Args:
            chunk_sink: Non-blocking consumer of produced chunks (ChunkQueue.push)
            sample_rate: Capture sample rate in Hz
            chunk_duration_ms: Duration of each emitted chunk
            channels: Channels to open; output is always mono
            audio_interface_factory: Creates a PortAudio handle (mocked in tests)
        """
        self.chunk_sink = chunk_sink
        self.sample_rate = sample_rate
        self.chunk_duration_ms = chunk_duration_ms
        self.channels = channels
        self.chunk_frames = int(sample_rate * chunk_duration_ms / 1000)
        self.audio_interface_factory = audio_interface_factory

        self._lock = threading.Lock()
        self.pyaudio_instance: Optional[pyaudio.PyAudio] = None
        self.stream = None
        self.framer: Optional[ChunkFramer] = None
        self.device: Optional[DeviceDescriptor] = None
        self.capture_session: Optional[CaptureSession] = None

        self.start_time: Optional[float] = None
        self.total_chunks = 0
        self.overflow_count = 0

    @property
    def is_open(self) -> bool:
        return self.stream is not None

    def open(self, device: DeviceDescriptor, capture_session: CaptureSession) -> None:
        """Open ``device`` and start delivering chunks for ``capture_session``."""
        if self.is_open:
            self.close()

        if not device.supports(self.sample_rate, self.channels):
            raise DeviceOpenError(
                f"Device '{device.name}' does not support {self.sample_rate}Hz/{self.channels}ch"
            )

        framer = ChunkFramer(capture_session, self.chunk_frames, self.sample_rate, self.channels)
        try:
            audio = self.audio_interface_factory()
        except Exception as e:
            raise DeviceOpenError(f"Audio subsystem unavailable: {e}") from e

        with self._lock:
            self.framer = framer
            self.device = device
            self.capture_session = capture_session
            self.total_chunks = 0
            self.overflow_count = 0
            self.start_time = time.time()

        try:
            stream = audio.open(
                format=pyaudio.paInt16,
                channels=self.channels,
                rate=self.sample_rate,
                input=True,
                input_device_index=device.index,
                frames_per_buffer=self.chunk_frames,
                stream_callback=self._on_audio,
            )
            stream.start_stream()
        except (IOError, OSError, ValueError) as e:
            audio.terminate()
            with self._lock:
                self.framer = None
            raise DeviceOpenError(f"Could not open '{device.name}': {e}") from e

        with self._lock:
            self.pyaudio_instance = audio
            self.stream = stream
        logger.info(f"Capture opened on '{device.name}': {self.sample_rate}Hz, "
                    f"{self.chunk_frames} frames/chunk, capture session {capture_session.session_id}")

    def _on_audio(self, in_data, frame_count, time_info, status):
        """PortAudio callback: frame and hand off, never block."""
        framer = self.framer
        if framer is None or in_data is None:
            return (None, pyaudio.paContinue)
        if status & pyaudio.paInputOverflow:
            self.overflow_count += 1
        for chunk in framer.feed(in_data):
            self.chunk_sink(chunk)
            self.total_chunks += 1
        return (None, pyaudio.paContinue)

    def close(self) -> None:
        """Stop the stream; safe to call repeatedly."""
        with self._lock:
            stream, self.stream = self.stream, None
            audio, self.pyaudio_instance = self.pyaudio_instance, None
            framer, self.framer = self.framer, None

        if stream is None and audio is None:
            return

        if framer is not None:
            dropped = framer.discard()
            if dropped:
                logger.debug(f"Discarded {dropped} trailing bytes on close")
        try:
            if stream is not None:
                stream.stop_stream()
                stream.close()
        except (IOError, OSError) as e:
            logger.warning(f"Error closing capture stream: {e}")
        finally:
            if audio is not None:
                audio.terminate()
        logger.info(f"Capture closed. Total chunks: {self.total_chunks}")

    def get_capture_stats(self) -> AudioStats:
        """Get current capture statistics."""
        duration = 0.0
        if self.start_time and self.is_open:
            duration = time.time() - self.start_time
        framer = self.framer
        return AudioStats(
            is_capturing=self.is_open,
            duration_seconds=duration,
            sample_rate=self.sample_rate,
            chunk_frames=self.chunk_frames,
            total_chunks=self.total_chunks,
            overflow_count=self.overflow_count,
            peak_level=framer.peak_level if framer else 0.0,
            device_name=self.device.name if self.device else None,
        )

    def __del__(self):
        """Ensure resources are cleaned up on deletion."""
        if self.stream is not None:
            self.close()
