"""Transcription-related data models."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Tuple


# Joins committed segments; offsets count it
SEGMENT_SEPARATOR = " "


class TranscriptKind(Enum):
    """Whether a transcript event may still be revised."""
    PARTIAL = "partial"
    FINAL = "final"


@dataclass(frozen=True)
class EndpointResult:
    """Provider-neutral result produced by a transcription endpoint."""
    text: str
    is_final: bool
    audio_start: Optional[float] = None  # seconds into the stream
    audio_end: Optional[float] = None
    confidence: Optional[float] = None


@dataclass(frozen=True)
class TranscriptEvent:
    """A recognized text segment positioned in the logical transcript.

    Offsets are character positions in the committed text, separators
    included; ``end`` is exclusive.
    """
    kind: TranscriptKind
    text: str
    start: int
    end: int
    capture_session_id: Optional[int] = None
    sequence_range: Optional[Tuple[int, int]] = None
    confidence: Optional[float] = None

    @property
    def is_final(self) -> bool:
        return self.kind is TranscriptKind.FINAL

    @classmethod
    def partial(cls, text: str, start: int = 0, **kwargs) -> "TranscriptEvent":
        return cls(TranscriptKind.PARTIAL, text, start, start + len(text), **kwargs)

    @classmethod
    def final(cls, text: str, start: int = 0, **kwargs) -> "TranscriptEvent":
        return cls(TranscriptKind.FINAL, text, start, start + len(text), **kwargs)


@dataclass(frozen=True)
class TranscriptSegment:
    """A committed or trailing segment held by the transcript log."""
    text: str
    start: int
    end: int
    capture_session_id: Optional[int] = None
    sequence_range: Optional[Tuple[int, int]] = None

    @classmethod
    def from_event(cls, event: TranscriptEvent) -> "TranscriptSegment":
        return cls(
            text=event.text,
            start=event.start,
            end=event.end,
            capture_session_id=event.capture_session_id,
            sequence_range=event.sequence_range,
        )


@dataclass(frozen=True)
class TranscriptSnapshot:
    """Point-in-time view of the transcript log."""
    segments: Sequence[TranscriptSegment]
    committed_text: str
    partial: Optional[TranscriptSegment] = None

    @property
    def partial_gap(self) -> str:
        """Padding between the committed text and the partial's start offset."""
        if self.partial is None:
            return ""
        return SEGMENT_SEPARATOR * max(0, self.partial.start - len(self.committed_text))

    @property
    def text(self) -> str:
        if self.partial is None:
            return self.committed_text
        return f"{self.committed_text}{self.partial_gap}{self.partial.text}"

    def as_list(self):
        """Committed segment texts followed by the trailing partial, if any."""
        texts = [segment.text for segment in self.segments]
        if self.partial is not None:
            texts.append(self.partial.text)
        return texts
