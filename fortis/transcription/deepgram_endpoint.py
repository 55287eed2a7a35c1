"""Deepgram live transcription over a websocket."""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional

import aiohttp

from .base import AbstractTranscriptionEndpoint
from ..errors import AuthError, ConnectError, SendError
from ..models.settings import Settings
from ..models.transcription import EndpointResult

logger = logging.getLogger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"

_CLOSED_TYPES = (
    aiohttp.WSMsgType.CLOSE,
    aiohttp.WSMsgType.CLOSING,
    aiohttp.WSMsgType.CLOSED,
    aiohttp.WSMsgType.ERROR,
)


def parse_message(raw: str) -> Optional[EndpointResult]:
    """Parse a Deepgram JSON message; None for non-transcript messages."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Ignoring malformed Deepgram message: {raw[:80]!r}")
        return None

    message_type = data.get("type", "Results")
    if message_type != "Results":
        logger.debug(f"Deepgram {message_type} message")
        return None

    alternatives = data.get("channel", {}).get("alternatives") or []
    if not alternatives:
        return None
    alternative = alternatives[0]

    start = data.get("start")
    duration = data.get("duration")
    end = start + duration if start is not None and duration is not None else None
    return EndpointResult(
        text=alternative.get("transcript", "").strip(),
        is_final=bool(data.get("is_final", False)),
        audio_start=start,
        audio_end=end,
        confidence=alternative.get("confidence"),
    )


class DeepgramEndpoint(AbstractTranscriptionEndpoint):
    """Streams linear16 audio to Deepgram and yields interim and final results."""

    name = "deepgram"

    def __init__(self,
                 url: str = DEEPGRAM_LISTEN_URL,
                 interim_results: bool = True,
                 punctuate: bool = True,
                 session_factory: Callable[[], aiohttp.ClientSession] = aiohttp.ClientSession):
        """Initialize Deepgram endpoint.

        Args:
            url: Listen websocket URL
            interim_results: Request partial results while speech is ongoing
            punctuate: Enable automatic punctuation
            session_factory: Creates the aiohttp client session
        """
        self.url = url
        self.interim_results = interim_results
        self.punctuate = punctuate
        self.session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    def build_query(self, settings: Settings, sample_rate: int, channels: int = 1) -> Dict[str, Any]:
        return {
            "encoding": "linear16",
            "sample_rate": str(sample_rate),
            "channels": str(channels),
            "language": settings.language,
            "model": settings.model,
            "interim_results": str(self.interim_results).lower(),
            "punctuate": str(self.punctuate).lower(),
        }

    async def connect(self, settings: Settings, sample_rate: int, channels: int = 1) -> None:
        await self.close()
        params = self.build_query(settings, sample_rate, channels)
        headers = {"Authorization": f"Token {settings.api_key}"}

        self._session = self.session_factory()
        try:
            self._ws = await self._session.ws_connect(self.url, params=params, headers=headers)
        except aiohttp.WSServerHandshakeError as e:
            await self.close()
            if e.status in (401, 403):
                raise AuthError(f"Deepgram rejected credentials (HTTP {e.status})") from e
            raise ConnectError(f"Deepgram handshake failed (HTTP {e.status})") from e
        except (aiohttp.ClientError, OSError) as e:
            await self.close()
            raise ConnectError(f"Could not reach Deepgram: {e}") from e
        except asyncio.CancelledError:
            await self.close()
            raise

        logger.info(f"Deepgram stream open: model={settings.model}, language={settings.language}, "
                    f"{sample_rate}Hz")

    async def send_audio(self, data: bytes) -> None:
        if self._ws is None or self._ws.closed:
            raise SendError("Deepgram stream is not open")
        try:
            await self._ws.send_bytes(data)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            raise SendError(f"Deepgram send failed: {e}") from e

    async def receive(self) -> Optional[EndpointResult]:
        while True:
            ws = self._ws
            if ws is None:
                return None
            message = await ws.receive()
            if message.type == aiohttp.WSMsgType.TEXT:
                result = parse_message(message.data)
                if result is not None:
                    return result
            elif message.type in _CLOSED_TYPES:
                logger.info(f"Deepgram stream ended ({message.type.name}, code={ws.close_code})")
                return None

    async def keep_alive(self) -> None:
        if self._ws is None or self._ws.closed:
            raise SendError("Deepgram stream is not open")
        try:
            await self._ws.send_str(json.dumps({"type": "KeepAlive"}))
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            raise SendError(f"Deepgram keep-alive failed: {e}") from e

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        session, self._session = self._session, None
        if ws is not None and not ws.closed:
            try:
                await ws.send_str(json.dumps({"type": "CloseStream"}))
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                logger.debug(f"CloseStream not delivered: {e}")
            await ws.close()
        if session is not None:
            await session.close()
