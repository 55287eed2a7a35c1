"""Append-only transcript model merging partial and final events."""

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

from ..errors import OutOfOrderError
from ..models.transcription import SEGMENT_SEPARATOR, TranscriptEvent, TranscriptSegment, TranscriptSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LogState:
    """Reducer state: everything about the log except the committed history."""
    committed_end: int = 0
    committed_count: int = 0
    partial: Optional[TranscriptSegment] = None


def reduce_event(state: LogState, event: TranscriptEvent) -> Tuple[LogState, Optional[TranscriptSegment]]:
    """Apply one transcript event to the log state.

    Returns:
        The new state and the segment to append to the history, if any.

    Raises:
        OutOfOrderError: if the event starts before already-committed text.
    """
    if event.start < state.committed_end:
        raise OutOfOrderError(
            f"{event.kind.value} segment at {event.start} precedes committed end {state.committed_end}"
        )

    if not event.is_final:
        partial = TranscriptSegment.from_event(event) if event.text else None
        return replace(state, partial=partial), None

    # An empty final closes the utterance without committing any text
    if not event.text:
        return replace(state, partial=None), None

    segment = TranscriptSegment.from_event(event)
    new_state = LogState(
        committed_end=segment.end,
        committed_count=state.committed_count + 1,
        partial=None,
    )
    return new_state, segment


class _SegmentView(Sequence):
    """Read-only view of the first ``length`` items of an append-only list."""

    def __init__(self, items: List[TranscriptSegment], length: int):
        self._items = items
        self._length = length

    def __len__(self) -> int:
        return self._length

    def __getitem__(self, index):
        if isinstance(index, slice):
            return [self._items[i] for i in range(self._length)[index]]
        return self._items[range(self._length)[index]]

    def __repr__(self) -> str:
        return f"_SegmentView({list(self)!r})"


class TranscriptLog:
    """Committed segments plus at most one trailing partial.

    Single writer (the network context), many readers. Snapshots are O(1):
    the committed history is append-only, so a snapshot holds a bounded view of
    the shared list together with the text accumulated up to that point.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._segments: List[TranscriptSegment] = []
        self._state = LogState()
        self._committed_text = ""

    def apply(self, event: TranscriptEvent) -> Optional[TranscriptSegment]:
        """Apply a partial or final event; returns the committed segment, if any."""
        with self._lock:
            new_state, segment = reduce_event(self._state, event)
            if segment is not None:
                self._segments.append(segment)
                # Pad up to the segment's offset so committed_text[start:end] is its text
                gap = SEGMENT_SEPARATOR * (segment.start - self._state.committed_end)
                self._committed_text = f"{self._committed_text}{gap}{segment.text}"
            self._state = new_state
        if segment is not None:
            logger.debug(f"Committed segment [{segment.start}, {segment.end}): '{segment.text}'")
        return segment

    def append_final(self, event: TranscriptEvent) -> Optional[TranscriptSegment]:
        if not event.is_final:
            raise ValueError("append_final requires a final event")
        return self.apply(event)

    def set_partial(self, event: TranscriptEvent) -> None:
        if event.is_final:
            raise ValueError("set_partial requires a partial event")
        self.apply(event)

    def clear_partial(self) -> None:
        with self._lock:
            self._state = replace(self._state, partial=None)

    @property
    def committed_end(self) -> int:
        with self._lock:
            return self._state.committed_end

    def snapshot(self) -> TranscriptSnapshot:
        with self._lock:
            state = self._state
            text = self._committed_text
        return TranscriptSnapshot(
            segments=_SegmentView(self._segments, state.committed_count),
            committed_text=text,
            partial=state.partial,
        )

    def __len__(self) -> int:
        with self._lock:
            return self._state.committed_count
