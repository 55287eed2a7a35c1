"""Google Speech-to-Text streaming transcription endpoint."""

import asyncio
import queue
import logging
import threading
from typing import Iterator, Optional

from google.api_core import exceptions as gax_exceptions
from google.api_core.client_options import ClientOptions
from google.cloud import speech
from google.oauth2 import service_account

from .base import AbstractTranscriptionEndpoint
from ..errors import AuthError, ConnectError, SendError
from ..models.settings import Settings
from ..models.transcription import EndpointResult

logger = logging.getLogger(__name__)

_END_OF_STREAM = object()


def extract_results(response) -> list:
    """Convert a StreamingRecognizeResponse into endpoint results."""
    results = []
    for recognition_result in response.results:
        if not recognition_result.alternatives:
            continue
        alternative = recognition_result.alternatives[0]
        end = recognition_result.result_end_time
        results.append(EndpointResult(
            text=alternative.transcript.strip(),
            is_final=bool(recognition_result.is_final),
            audio_end=end.total_seconds() if end is not None else None,
            confidence=alternative.confidence if recognition_result.is_final else None,
        ))
    return results


class GoogleStreamingEndpoint(AbstractTranscriptionEndpoint):
    """Google Speech-to-Text ``streaming_recognize`` driven from a worker thread.

    The gRPC call is blocking, so requests are fed through a thread-safe queue
    and responses are handed back to the event loop.
    """

    name = "google"

    def __init__(self, enable_automatic_punctuation: bool = True, client_factory=speech.SpeechClient):
        self.enable_automatic_punctuation = enable_automatic_punctuation
        self.client_factory = client_factory
        self._requests: Optional[queue.Queue] = None
        self._results: Optional[asyncio.Queue] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._open = False

    def _create_client(self, settings: Settings):
        if settings.credentials_path:
            logger.info(f"Loading Google credentials from: {settings.credentials_path}")
            credentials = service_account.Credentials.from_service_account_file(settings.credentials_path)
            return self.client_factory(credentials=credentials)
        return self.client_factory(client_options=ClientOptions(api_key=settings.api_key))

    def build_config(self, settings: Settings, sample_rate: int, channels: int = 1):
        recognition_config = speech.RecognitionConfig(
            encoding=speech.RecognitionConfig.AudioEncoding.LINEAR16,
            sample_rate_hertz=sample_rate,
            audio_channel_count=channels,
            language_code=settings.language,
            model=settings.model,
            enable_automatic_punctuation=self.enable_automatic_punctuation,
        )
        return speech.StreamingRecognitionConfig(config=recognition_config, interim_results=True)

    async def connect(self, settings: Settings, sample_rate: int, channels: int = 1) -> None:
        await self.close()
        try:
            client = self._create_client(settings)
        except (OSError, ValueError) as e:
            raise AuthError(f"Invalid Google credentials: {e}") from e

        self._loop = asyncio.get_running_loop()
        self._requests = queue.Queue()
        self._results = asyncio.Queue()
        streaming_config = self.build_config(settings, sample_rate, channels)
        first_response = self._loop.create_future()

        self._thread = threading.Thread(
            target=self._response_loop,
            args=(client, streaming_config, first_response),
            daemon=True,
            name="GoogleStreamingThread",
        )
        self._thread.start()
        self._open = True

        # Surface immediate auth/connection failures; otherwise the stream is live
        done, _ = await asyncio.wait({first_response}, timeout=0.5)
        if not done:
            first_response.cancel()
        elif first_response.exception() is not None:
            self._open = False
            raise first_response.exception()
        logger.info(f"Google stream open: model={settings.model}, language={settings.language}, "
                    f"{sample_rate}Hz")

    def _request_iterator(self) -> Iterator[speech.StreamingRecognizeRequest]:
        while True:
            data = self._requests.get()
            if data is _END_OF_STREAM:
                return
            yield speech.StreamingRecognizeRequest(audio_content=data)

    def _response_loop(self, client, streaming_config, first_response) -> None:
        def resolve(error: Optional[Exception] = None):
            if not first_response.done():
                if error is None:
                    first_response.set_result(True)
                else:
                    first_response.set_exception(error)

        loop = self._loop
        results = self._results
        try:
            responses = client.streaming_recognize(config=streaming_config, requests=self._request_iterator())
            for response in responses:
                loop.call_soon_threadsafe(resolve)
                for result in extract_results(response):
                    loop.call_soon_threadsafe(results.put_nowait, result)
        except (gax_exceptions.Unauthenticated, gax_exceptions.PermissionDenied) as e:
            logger.error(f"Google STT rejected credentials: {e}")
            loop.call_soon_threadsafe(resolve, AuthError(f"Google rejected credentials: {e}"))
        except gax_exceptions.GoogleAPICallError as e:
            logger.warning(f"Google STT stream ended with error: {e}")
            loop.call_soon_threadsafe(resolve, ConnectError(f"Google Speech API error: {e}"))
        finally:
            if not loop.is_closed():
                loop.call_soon_threadsafe(results.put_nowait, None)

    async def send_audio(self, data: bytes) -> None:
        if not self._open or self._requests is None or not (self._thread and self._thread.is_alive()):
            raise SendError("Google stream is not open")
        self._requests.put(data)

    async def receive(self) -> Optional[EndpointResult]:
        if self._results is None:
            return None
        result = await self._results.get()
        if result is None:
            self._open = False
        return result

    async def close(self) -> None:
        self._open = False
        if self._requests is not None:
            self._requests.put(_END_OF_STREAM)
        thread, self._thread = self._thread, None
        if thread is not None and thread.is_alive():
            await asyncio.get_running_loop().run_in_executor(None, thread.join, 2.0)
