"""Bounded hand-off queue between the capture callback and the network sender."""

import math
import logging
import threading
from collections import deque
from typing import Optional

from ..models.audio import AudioChunk

logger = logging.getLogger(__name__)


def capacity_for(queue_seconds: float, chunk_duration_ms: int) -> int:
    """Number of chunks needed to hold ``queue_seconds`` of audio."""
    return max(1, math.ceil(queue_seconds * 1000.0 / chunk_duration_ms))


class ChunkQueue:
    """Bounded FIFO of audio chunks that drops the oldest chunk on overflow.

    ``push`` never blocks, so it is safe to call from the hardware callback.
    ``pop`` blocks until a chunk arrives, the timeout expires, or the queue is
    closed. Only chunks belonging to the currently accepted capture session are
    admitted; ``reset`` switches sessions and discards whatever is queued, so
    chunks from two capture sessions are never interleaved.

    Like ``queue.Queue``, every popped chunk stays unfinished until the
    consumer calls ``task_done``; ``wait_until_empty`` waits for that, not
    just for the deque to empty.
    """

    def __init__(self, capacity: int = 30):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._chunks = deque()
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._all_done = threading.Condition(self._lock)
        self._unfinished = 0
        self._session_id: Optional[int] = None
        self._closed = False
        self._dropped = 0
        self._rejected = 0

        logger.info(f"ChunkQueue initialized: capacity={capacity} chunks")

    def push(self, chunk: AudioChunk) -> bool:
        """Add a chunk without blocking.

        Returns:
            False if the chunk was rejected (closed queue or stale session).
        """
        with self._lock:
            if self._closed or chunk.capture_session_id != self._session_id:
                self._rejected += 1
                return False
            if len(self._chunks) >= self.capacity:
                self._chunks.popleft()
                self._dropped += 1
            else:
                self._unfinished += 1
            self._chunks.append(chunk)
            self._not_empty.notify()
            return True

    def pop(self, timeout: Optional[float] = None) -> Optional[AudioChunk]:
        """Remove and return the oldest chunk.

        Args:
            timeout: Seconds to wait; None waits until a chunk or close().

        Returns:
            The chunk, or None on timeout or when the queue is closed.
        """
        with self._lock:
            if not self._chunks and not self._closed:
                self._not_empty.wait_for(lambda: self._chunks or self._closed, timeout)
            if not self._chunks:
                return None
            return self._chunks.popleft()

    def task_done(self) -> None:
        """Mark a popped chunk as sent or deliberately discarded."""
        with self._lock:
            if self._unfinished <= 0:
                raise ValueError("task_done() called too many times")
            self._settle(1)

    def _settle(self, count: int) -> None:
        self._unfinished -= count
        if self._unfinished == 0:
            self._all_done.notify_all()

    def reset(self, capture_session_id: Optional[int]) -> int:
        """Discard all queued chunks and accept only ``capture_session_id``.

        Passing None stops accepting chunks altogether.

        Returns:
            Number of chunks discarded.
        """
        with self._lock:
            discarded = len(self._chunks)
            self._chunks.clear()
            self._session_id = capture_session_id
            self._settle(discarded)
        if discarded:
            logger.debug(f"ChunkQueue reset discarded {discarded} chunks")
        logger.debug(f"ChunkQueue now accepting capture session {capture_session_id}")
        return discarded

    def wait_until_empty(self, timeout: Optional[float] = None) -> bool:
        """Block until every pushed chunk has been popped and marked done.

        Returns:
            False if the timeout expired first.
        """
        with self._lock:
            return self._all_done.wait_for(lambda: self._unfinished == 0 or self._closed, timeout)

    def close(self) -> None:
        """Reject further pushes and wake any blocked consumer."""
        with self._lock:
            self._closed = True
            self._settle(len(self._chunks))
            self._chunks.clear()
            self._session_id = None
            self._not_empty.notify_all()
            self._all_done.notify_all()
        logger.info(f"ChunkQueue closed (dropped={self._dropped}, rejected={self._rejected})")

    @property
    def session_id(self) -> Optional[int]:
        with self._lock:
            return self._session_id

    @property
    def dropped_count(self) -> int:
        with self._lock:
            return self._dropped

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def __len__(self) -> int:
        with self._lock:
            return len(self._chunks)
