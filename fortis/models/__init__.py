"""Data models for the Fortis application."""

from .audio import AudioChunk, AudioStats, CaptureSession, DeviceDescriptor
from .events import ChunkDroppedEvent, DeviceRemovedEvent
from .session import Command, CommandType, SessionState, SessionStatus
from .settings import Settings
from .transcription import (
    EndpointResult,
    TranscriptEvent,
    TranscriptKind,
    TranscriptSegment,
    TranscriptSnapshot,
)

__all__ = [
    "AudioChunk",
    "AudioStats",
    "CaptureSession",
    "DeviceDescriptor",
    "ChunkDroppedEvent",
    "DeviceRemovedEvent",
    "Command",
    "CommandType",
    "SessionState",
    "SessionStatus",
    "Settings",
    "EndpointResult",
    "TranscriptEvent",
    "TranscriptKind",
    "TranscriptSegment",
    "TranscriptSnapshot",
]
