"""Network context: owns the transcription session's send/receive loops."""

import asyncio
import logging
import threading
import concurrent.futures
from typing import Callable, Optional

from pubsub import pub

from .backoff import BackoffPolicy
from ..audio.chunk_queue import ChunkQueue
from ..errors import AuthError, ConnectError, OutOfOrderError, SendError
from ..models.audio import AudioChunk
from ..models.events import CHUNK_DROPPED_TOPIC, ChunkDroppedEvent
from ..models.session import Command, CommandType
from ..models.settings import Settings
from ..models.transcription import TranscriptEvent
from ..transcription.base import AbstractTranscriptionEndpoint
from ..transcription.session import TranscriptionSession
from ..transcription.transcript_log import TranscriptLog

logger = logging.getLogger(__name__)


class TranscriptionService:
    """Moves chunks from the queue to the endpoint and events into the log.

    Runs an asyncio loop in a dedicated thread for all endpoint I/O, plus a
    sender thread that blocks on the chunk queue. Disconnects are reported to
    the state machine through ``signal_callback``; the service never reconnects
    on its own, only when asked via ``begin_reconnect``.
    """

    def __init__(self,
                 chunk_queue: ChunkQueue,
                 transcript_log: TranscriptLog,
                 endpoint_factory: Callable[[], AbstractTranscriptionEndpoint],
                 signal_callback: Callable[[Command], None],
                 backoff: Optional[BackoffPolicy] = None,
                 sample_rate: int = 16000,
                 channels: int = 1,
                 connect_timeout: float = 10.0,
                 send_timeout: float = 5.0,
                 keep_alive_interval: float = 3.0,
                 chunk_dropped_topic: str = CHUNK_DROPPED_TOPIC):
        """Initialize transcription service.

        Args:
            chunk_queue: Source of audio chunks
            transcript_log: Destination of transcript events
            endpoint_factory: Creates a fresh endpoint per connection
            signal_callback: Receives DISCONNECTED / RECONNECTED / RECONNECT_FAILED
            backoff: Reconnect delay schedule
            sample_rate: Sample rate announced to the endpoint
            channels: Channel count announced to the endpoint
            connect_timeout: Per-attempt connect timeout in seconds
            send_timeout: Maximum time for a single chunk send
            keep_alive_interval: Seconds between keep-alive messages
            chunk_dropped_topic: Pub/sub topic for ChunkDroppedEvent
        """
        self.chunk_queue = chunk_queue
        self.transcript_log = transcript_log
        self.endpoint_factory = endpoint_factory
        self.signal_callback = signal_callback
        self.backoff = backoff or BackoffPolicy()
        self.sample_rate = sample_rate
        self.channels = channels
        self.connect_timeout = connect_timeout
        self.send_timeout = send_timeout
        self.keep_alive_interval = keep_alive_interval
        self.chunk_dropped_topic = chunk_dropped_topic

        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.loop_thread: Optional[threading.Thread] = None
        self.sender_thread: Optional[threading.Thread] = None
        self._loop_ready = threading.Event()
        self._stop_event = threading.Event()
        self._connected = threading.Event()

        # Touched only on the loop thread
        self._session: Optional[TranscriptionSession] = None
        self._generation = 0
        self._receive_task: Optional[asyncio.Task] = None
        self._keep_alive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        self.reconnect_attempt = 0
        self.events_received = 0
        self._last_dropped = 0

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    @property
    def is_reconnecting(self) -> bool:
        task = self._reconnect_task
        return task is not None and not task.done()

    @property
    def generation(self) -> int:
        return self._generation

    def start(self) -> None:
        """Start the network loop and sender threads."""
        if self.loop_thread and self.loop_thread.is_alive():
            return
        self._stop_event.clear()
        self.loop_thread = threading.Thread(target=self._run_loop, daemon=True, name="TranscriptionLoopThread")
        self.loop_thread.start()
        self._loop_ready.wait(timeout=5.0)
        self.sender_thread = threading.Thread(target=self._send_loop, daemon=True, name="ChunkSenderThread")
        self.sender_thread.start()
        logger.info("Transcription service started")

    def _run_loop(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self.loop = loop
        self._loop_ready.set()
        try:
            loop.run_forever()
        finally:
            loop.close()
            logger.debug("Transcription loop closed")

    def _call(self, coro, timeout: Optional[float]):
        """Run ``coro`` on the network loop and wait for its result."""
        if self.loop is None or self.loop.is_closed():
            coro.close()
            raise RuntimeError("Transcription service is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    # -- session lifecycle -------------------------------------------------

    def open_session(self, settings: Settings) -> None:
        """Open a new session, replacing any existing one.

        Raises:
            AuthError: credentials rejected
            ConnectError: endpoint unreachable or timed out
        """
        try:
            self._call(self._open(settings), timeout=self.connect_timeout + 2.0)
        except concurrent.futures.TimeoutError as e:
            raise ConnectError("Timed out opening transcription session") from e

    async def _open(self, settings: Settings) -> None:
        await self._teardown()
        session = TranscriptionSession(
            self.endpoint_factory(),
            sample_rate=self.sample_rate,
            channels=self.channels,
            base_offset=self.transcript_log.committed_end,
            connect_timeout=self.connect_timeout,
        )
        await session.open(settings)
        self._attach(session)

    def _attach(self, session: TranscriptionSession) -> None:
        self._generation += 1
        self._session = session
        generation = self._generation
        self._receive_task = self.loop.create_task(self._receive_loop(session, generation))
        self._keep_alive_task = self.loop.create_task(self._keep_alive_loop(session, generation))
        self._connected.set()

    async def _teardown(self) -> None:
        self._connected.clear()
        session, self._session = self._session, None
        tasks = [task for task in (self._receive_task, self._keep_alive_task) if task is not None]
        self._receive_task = self._keep_alive_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if session is not None:
            await session.close()

    def close_session(self) -> None:
        """Cancel any reconnect and close the current session."""
        if self.loop is None or self.loop.is_closed():
            return
        self._call(self._close(), timeout=self.connect_timeout)

    async def _close(self) -> None:
        await self._cancel_reconnect()
        await self._teardown()

    # -- receive side --------------------------------------------------------

    async def _receive_loop(self, session: TranscriptionSession, generation: int) -> None:
        reason = "stream ended"
        try:
            async for event in session.events():
                self._apply_event(event)
            reason = session.disconnect_reason or reason
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Transcription receive failed: {e}", exc_info=True)
            reason = f"receive failed: {e}"
        self._handle_disconnect(session, generation, reason)

    def _apply_event(self, event: TranscriptEvent) -> None:
        self.events_received += 1
        try:
            self.transcript_log.apply(event)
        except OutOfOrderError as e:
            logger.warning(f"Discarding out-of-order transcript event: {e}")

    async def _keep_alive_loop(self, session: TranscriptionSession, generation: int) -> None:
        while True:
            await asyncio.sleep(self.keep_alive_interval)
            if not session.is_open:
                return
            try:
                await session.keep_alive()
            except SendError as e:
                self._handle_disconnect(session, generation, str(e))
                return

    def _handle_disconnect(self, session: TranscriptionSession, generation: int, reason: str) -> None:
        """Report an unexpected disconnect once per session (loop thread only)."""
        if self._session is not session or not self._connected.is_set():
            return
        self._connected.clear()
        self.transcript_log.clear_partial()
        logger.warning(f"Transcription session {generation} lost: {reason}")
        self.signal_callback(Command(CommandType.DISCONNECTED, reason=reason, generation=generation))

    def _disconnect_current(self, reason: str) -> None:
        if self._session is not None:
            self._handle_disconnect(self._session, self._generation, reason)

    # -- send side -----------------------------------------------------------

    async def _send(self, chunk: AudioChunk) -> None:
        session = self._session
        if session is None or not session.is_open:
            raise SendError("No open transcription session")
        generation = self._generation
        try:
            await session.send(chunk)
        except SendError as e:
            self._handle_disconnect(session, generation, str(e))
            raise

    def _send_loop(self) -> None:
        """Sender thread: blocking pop, hold unsent chunks across disconnects."""
        pending: Optional[AudioChunk] = None
        while not self._stop_event.is_set():
            if pending is None:
                if self.chunk_queue.closed:
                    break
                pending = self.chunk_queue.pop(timeout=0.2)
                self._report_drops()
                if pending is None:
                    continue

            if pending.capture_session_id != self.chunk_queue.session_id:
                logger.debug(f"Discarding chunk {pending.sequence_number} from superseded "
                             f"capture session {pending.capture_session_id}")
                pending = None
                self.chunk_queue.task_done()
                continue

            if not self._connected.wait(timeout=0.2):
                continue

            try:
                self._call(self._send(pending), timeout=self.send_timeout)
                pending = None
                self.chunk_queue.task_done()
            except SendError as e:
                logger.debug(f"Holding chunk {pending.sequence_number} until reconnect: {e}")
            except concurrent.futures.TimeoutError:
                logger.warning(f"Send of chunk {pending.sequence_number} timed out")
                if self.loop is not None and not self.loop.is_closed():
                    self.loop.call_soon_threadsafe(self._disconnect_current, "send timed out")
            except RuntimeError:
                break
        if pending is not None:
            self.chunk_queue.task_done()
        logger.debug("Chunk sender exiting")

    def _report_drops(self) -> None:
        dropped = self.chunk_queue.dropped_count
        if dropped > self._last_dropped:
            newly = dropped - self._last_dropped
            self._last_dropped = dropped
            logger.warning(f"Chunk queue overflow: dropped {newly} chunks ({dropped} total)")
            pub.sendMessage(
                self.chunk_dropped_topic,
                event=ChunkDroppedEvent(
                    total_dropped=dropped,
                    newly_dropped=newly,
                    capture_session_id=self.chunk_queue.session_id,
                ),
            )

    # -- reconnection --------------------------------------------------------

    def begin_reconnect(self, settings: Settings) -> None:
        """Start the backoff loop without blocking the caller."""
        self.loop.call_soon_threadsafe(self._start_reconnect, settings)

    def _start_reconnect(self, settings: Settings) -> None:
        if self.is_reconnecting:
            return
        self._reconnect_task = self.loop.create_task(self._reconnect_loop(settings))

    async def _reconnect_loop(self, settings: Settings) -> None:
        attempt = 0
        last_error: Optional[Exception] = None
        while not self.backoff.exhausted(attempt):
            delay = self.backoff.delay(attempt)
            self.reconnect_attempt = attempt + 1
            logger.info(f"Reconnect attempt {attempt + 1} in {delay:.1f}s")
            await asyncio.sleep(delay)
            try:
                await self._open(settings)
            except AuthError as e:
                logger.error(f"Reconnect rejected: {e}")
                self.signal_callback(Command(CommandType.RECONNECT_FAILED, reason="authentication rejected"))
                return
            except ConnectError as e:
                logger.warning(f"Reconnect attempt {attempt + 1} failed: {e}")
                last_error = e
                attempt += 1
                continue
            except Exception as e:
                logger.error(f"Reconnect attempt {attempt + 1} failed unexpectedly: {e}", exc_info=True)
                self.signal_callback(Command(CommandType.RECONNECT_FAILED, reason=f"reconnect failed: {e}"))
                return
            logger.info(f"Reconnected after {attempt + 1} attempt(s)")
            self.reconnect_attempt = 0
            self.signal_callback(Command(CommandType.RECONNECTED, generation=self._generation))
            return
        self.signal_callback(Command(CommandType.RECONNECT_FAILED, reason=f"reconnect failed: {last_error}"))

    def cancel_reconnect(self) -> None:
        if self.loop is None or self.loop.is_closed():
            return
        self._call(self._cancel_reconnect(), timeout=self.connect_timeout)

    async def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            logger.info("Reconnect cancelled")
        self.reconnect_attempt = 0

    # -- shutdown ------------------------------------------------------------

    def stop(self) -> None:
        """Close the session and stop both threads."""
        logger.info("Stopping transcription service...")
        try:
            self.close_session()
        except (RuntimeError, concurrent.futures.TimeoutError) as e:
            logger.warning(f"Error closing transcription session: {e}")
        self._stop_event.set()

        if self.sender_thread and self.sender_thread.is_alive():
            self.sender_thread.join(timeout=2.0)
            if self.sender_thread.is_alive():
                logger.warning("Chunk sender thread did not stop cleanly")

        if self.loop is not None and not self.loop.is_closed():
            self.loop.call_soon_threadsafe(self.loop.stop)
        if self.loop_thread and self.loop_thread.is_alive():
            self.loop_thread.join(timeout=2.0)
            if self.loop_thread.is_alive():
                logger.warning("Transcription loop thread did not stop cleanly")
        logger.info("Transcription service stopped")
