"""Session-related data models."""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from .audio import DeviceDescriptor


class SessionState(Enum):
    """States of the capture/transcription session."""
    IDLE = "idle"
    RECORDING = "recording"
    PAUSED = "paused"
    RECONNECTING = "reconnecting"
    SWITCHING_DEVICE = "switching_device"
    ERROR = "error"


class CommandType(Enum):
    """Commands from the display layer and signals from the pipeline."""
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    SELECT_DEVICE = "select_device"
    OPEN_SETTINGS = "open_settings"
    RESET = "reset"
    QUIT = "quit"
    # Internal signals
    DISCONNECTED = "disconnected"
    RECONNECTED = "reconnected"
    RECONNECT_FAILED = "reconnect_failed"
    DEVICE_REMOVED = "device_removed"


@dataclass(frozen=True)
class Command:
    """A transition request for the session state machine."""
    type: CommandType
    device_id: Optional[str] = None
    reason: Optional[str] = None
    generation: Optional[int] = None

    @classmethod
    def select_device(cls, device_id: str) -> "Command":
        return cls(CommandType.SELECT_DEVICE, device_id=device_id)


@dataclass(frozen=True)
class SessionStatus:
    """Immutable view of the session state shared with the display."""
    state: SessionState = SessionState.IDLE
    reason: Optional[str] = None  # set only in ERROR
    message: Optional[str] = None  # user-visible hint, e.g. "settings required"
    device: Optional[DeviceDescriptor] = None
    capture_session_id: Optional[int] = None
    connected: bool = False
    reconnect_attempt: int = 0

    def evolve(self, **changes) -> "SessionStatus":
        return replace(self, **changes)

    @property
    def label(self) -> str:
        if self.state is SessionState.ERROR and self.reason:
            return f"Error({self.reason})"
        return self.state.name.replace("_", " ").title()
