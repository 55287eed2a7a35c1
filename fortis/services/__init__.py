"""Services layer: reconnect policy, network context and session state machine."""

from .backoff import BackoffPolicy
from .session_manager import RecordingClock, SessionStateMachine
from .transcription_service import TranscriptionService

__all__ = [
    "BackoffPolicy",
    "RecordingClock",
    "SessionStateMachine",
    "TranscriptionService",
]
