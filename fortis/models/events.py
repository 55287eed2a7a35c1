"""Event models and pub/sub topic names."""

import time
from dataclasses import dataclass, field
from typing import Optional


DEVICE_REMOVED_TOPIC = "audio.device_removed"
CHUNK_DROPPED_TOPIC = "audio.chunk_dropped"
SESSION_STATE_TOPIC = "session.state"
OPEN_SETTINGS_TOPIC = "session.open_settings"


@dataclass(frozen=True)
class DeviceRemovedEvent:
    """A previously enumerated input device disappeared."""
    device_id: str
    device_name: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ChunkDroppedEvent:
    """The chunk queue discarded audio under backpressure."""
    total_dropped: int
    newly_dropped: int
    capture_session_id: Optional[int] = None
    timestamp: float = field(default_factory=time.time)
