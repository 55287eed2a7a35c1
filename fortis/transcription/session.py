"""One streaming connection to a transcription endpoint."""

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Optional, Tuple

from .base import AbstractTranscriptionEndpoint
from ..errors import AuthError, ConnectError, SendError
from ..models.audio import AudioChunk
from ..models.settings import Settings
from ..models.transcription import SEGMENT_SEPARATOR, EndpointResult, TranscriptEvent, TranscriptKind

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    NEW = "new"
    OPEN = "open"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


class TranscriptionSession:
    """Sends audio chunks and turns endpoint results into transcript events.

    A session is single-use: once it disconnects or is closed it stays that way
    and a new session must be opened. Events are positioned in the logical
    transcript starting from ``base_offset``. Once text has been committed, each
    event starts one separator past the end of the last final, so offsets index
    directly into the committed text. A non-empty final advances that cursor.
    """

    def __init__(self,
                 endpoint: AbstractTranscriptionEndpoint,
                 sample_rate: int = 16000,
                 channels: int = 1,
                 base_offset: int = 0,
                 connect_timeout: float = 10.0):
        self.endpoint = endpoint
        self.sample_rate = sample_rate
        self.channels = channels
        self.connect_timeout = connect_timeout
        self.state = ConnectionState.NEW
        self.disconnect_reason: Optional[str] = None

        self._cursor = base_offset
        self._events_started = False
        self._capture_session_id: Optional[int] = None
        self._range_start: Optional[int] = None
        self._range_end: Optional[int] = None
        self.chunks_sent = 0

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    @property
    def cursor(self) -> int:
        return self._cursor

    async def open(self, settings: Settings) -> None:
        """Connect to the endpoint.

        Raises:
            AuthError: credentials rejected
            ConnectError: unreachable, or no answer within ``connect_timeout``
        """
        if self.state is not ConnectionState.NEW:
            raise ConnectError(f"Session cannot be reopened (state={self.state.value})")
        try:
            await asyncio.wait_for(
                self.endpoint.connect(settings, self.sample_rate, self.channels),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            await self._abandon()
            raise ConnectError(f"Connect to {self.endpoint.name} timed out after {self.connect_timeout}s") from e
        except (AuthError, ConnectError, asyncio.CancelledError):
            await self._abandon()
            raise
        self.state = ConnectionState.OPEN
        logger.info(f"Transcription session open via {self.endpoint.name} (offset={self._cursor})")

    async def _abandon(self) -> None:
        """Release whatever a failed or cancelled connect left behind."""
        self.state = ConnectionState.CLOSED
        await self.endpoint.close()

    async def send(self, chunk: AudioChunk) -> None:
        """Send one chunk.

        Raises:
            SendError: the connection is down; the caller keeps the chunk.
        """
        if not self.is_open:
            raise SendError(f"Transcription session is {self.state.value}")
        try:
            await self.endpoint.send_audio(chunk.data)
        except SendError as e:
            self._mark_disconnected(str(e))
            raise
        self.chunks_sent += 1
        if chunk.capture_session_id != self._capture_session_id:
            self._capture_session_id = chunk.capture_session_id
            self._range_start = None
        if self._range_start is None:
            self._range_start = chunk.sequence_number
        self._range_end = chunk.sequence_number

    async def keep_alive(self) -> None:
        if not self.is_open:
            raise SendError(f"Transcription session is {self.state.value}")
        try:
            await self.endpoint.keep_alive()
        except SendError as e:
            self._mark_disconnected(str(e))
            raise

    async def events(self) -> AsyncIterator[TranscriptEvent]:
        """Yield transcript events until the stream ends.

        May be consumed only once.
        """
        if self._events_started:
            raise RuntimeError("events() can only be consumed once per session")
        self._events_started = True

        while self.is_open:
            result = await self.endpoint.receive()
            if result is None:
                self._mark_disconnected("stream ended by endpoint")
                break
            event = self._to_event(result)
            if event is not None:
                yield event

    def _current_range(self) -> Optional[Tuple[int, int]]:
        if self._range_start is None or self._range_end is None:
            return None
        return (self._range_start, self._range_end)

    def _to_event(self, result: EndpointResult) -> Optional[TranscriptEvent]:
        kind = TranscriptKind.FINAL if result.is_final else TranscriptKind.PARTIAL
        start = self._cursor
        if start > 0 and result.text:
            start += len(SEGMENT_SEPARATOR)
        event = TranscriptEvent(
            kind=kind,
            text=result.text,
            start=start,
            end=start + len(result.text),
            capture_session_id=self._capture_session_id,
            sequence_range=self._current_range(),
            confidence=result.confidence,
        )
        if result.is_final:
            # An empty final commits nothing, so the cursor stays put
            if result.text:
                self._cursor = event.end
            self._range_start = None
        return event

    def _mark_disconnected(self, reason: str) -> None:
        if self.state is ConnectionState.OPEN:
            self.state = ConnectionState.DISCONNECTED
            self.disconnect_reason = reason
            logger.warning(f"Transcription session disconnected: {reason}")

    async def close(self) -> None:
        """Close the connection; idempotent."""
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        await self.endpoint.close()
        logger.info(f"Transcription session closed ({self.chunks_sent} chunks sent)")
