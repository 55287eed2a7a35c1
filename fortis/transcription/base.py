"""Abstract base class for streaming transcription endpoints."""

from abc import ABC, abstractmethod
from typing import Optional
import logging

from ..models.settings import Settings
from ..models.transcription import EndpointResult

logger = logging.getLogger(__name__)


class AbstractTranscriptionEndpoint(ABC):
    """A bidirectional streaming recognizer.

    Audio frames are accepted in the order sent; results arrive asynchronously
    and without per-chunk acknowledgment. The remote side may end the stream at
    any time, which ``receive`` reports by returning None.
    """

    name = "abstract"

    @abstractmethod
    async def connect(self, settings: Settings, sample_rate: int, channels: int = 1) -> None:
        """Open the stream.

        Raises:
            AuthError: credentials rejected
            ConnectError: endpoint unreachable
        """

    @abstractmethod
    async def send_audio(self, data: bytes) -> None:
        """Send one binary audio frame.

        Raises:
            SendError: the stream is not open
        """

    @abstractmethod
    async def receive(self) -> Optional[EndpointResult]:
        """Wait for the next result; None once the stream has ended."""

    async def keep_alive(self) -> None:
        """Keep an idle stream open (no-op for providers that do not need it)."""

    @abstractmethod
    async def close(self) -> None:
        """Close the stream; safe to call repeatedly."""
