"""Audio-related data models."""

import time
from dataclasses import dataclass, field
from typing import FrozenSet, Optional


BYTES_PER_SAMPLE = 2  # 16-bit signed PCM


@dataclass(frozen=True)
class DeviceDescriptor:
    """An input device as seen by one enumeration snapshot."""
    device_id: str
    name: str
    index: int  # PortAudio index, only valid for the snapshot it came from
    max_input_channels: int
    default_sample_rate: float
    sample_rates: FrozenSet[int] = frozenset()
    host_api: int = 0

    def supports(self, sample_rate: int, channels: int) -> bool:
        """Whether this device advertises the given rate/channel combination."""
        if channels > self.max_input_channels:
            return False
        if self.sample_rates:
            return sample_rate in self.sample_rates
        return True


@dataclass(frozen=True)
class AudioChunk:
    """A fixed-duration slice of mono 16-bit audio."""
    capture_session_id: int
    sequence_number: int
    data: bytes
    sample_rate: int
    timestamp: float = field(default_factory=time.time)

    @property
    def duration_ms(self) -> float:
        return len(self.data) / BYTES_PER_SAMPLE / self.sample_rate * 1000.0


@dataclass
class CaptureSession:
    """One continuous capture run against one device."""
    session_id: int
    device_id: str
    start_time: float = field(default_factory=time.time)
    next_sequence: int = 0

    def take_sequence(self) -> int:
        sequence = self.next_sequence
        self.next_sequence += 1
        return sequence


@dataclass
class AudioStats:
    """Audio capture statistics."""
    is_capturing: bool
    duration_seconds: float
    sample_rate: int
    chunk_frames: int
    total_chunks: int
    overflow_count: int = 0
    peak_level: float = 0.0
    device_name: Optional[str] = None
