"""Session state machine coordinating capture, queue and transcription."""

import time
import queue
import logging
import itertools
import threading
from typing import Callable, Dict, Optional

from pubsub import pub

from .transcription_service import TranscriptionService
from ..audio.capture import CaptureSource
from ..audio.chunk_queue import ChunkQueue
from ..audio.devices import DeviceRegistry
from ..errors import (
    AuthError,
    ConfigIncompleteError,
    ConnectError,
    DeviceEnumerationError,
    DeviceOpenError,
)
from ..models.audio import CaptureSession, DeviceDescriptor
from ..models.events import OPEN_SETTINGS_TOPIC, SESSION_STATE_TOPIC, DeviceRemovedEvent
from ..models.session import Command, CommandType, SessionState, SessionStatus
from ..models.settings import Settings

logger = logging.getLogger(__name__)

SETTINGS_REQUIRED = "settings required"


class RecordingClock:
    """Tracks recording time, excluding paused periods."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._elapsed = 0.0
        self._started_at: Optional[float] = None

    def start(self) -> None:
        self._elapsed = 0.0
        self._started_at = self._clock()

    def pause(self) -> None:
        if self._started_at is not None:
            self._elapsed += self._clock() - self._started_at
            self._started_at = None

    def resume(self) -> None:
        if self._started_at is None:
            self._started_at = self._clock()

    def elapsed(self) -> float:
        running = self._clock() - self._started_at if self._started_at is not None else 0.0
        return self._elapsed + running

    def format(self) -> str:
        total = int(self.elapsed())
        return f"{total // 3600:02d}:{(total % 3600) // 60:02d}:{total % 60:02d}"


class SessionStateMachine:
    """Serializes every state transition through a single control thread.

    Other contexts never mutate the state; they ``submit`` commands and read the
    immutable ``status``. A command that does not apply to the current state is
    ignored. Commands arriving mid-transition wait in the queue, so e.g. a
    pause sent during a device switch is evaluated once the switch completes.
    """

    def __init__(self,
                 registry: DeviceRegistry,
                 capture: CaptureSource,
                 chunk_queue: ChunkQueue,
                 service: TranscriptionService,
                 settings_provider: Callable[[], Settings],
                 preferred_device: Optional[str] = None,
                 flush_timeout: float = 1.0,
                 state_topic: str = SESSION_STATE_TOPIC,
                 settings_topic: str = OPEN_SETTINGS_TOPIC):
        """Initialize the state machine.

        Args:
            registry: Device registry (also the source of removal events)
            capture: Capture source feeding ``chunk_queue``
            chunk_queue: Hand-off between capture and network
            service: Network context owning the transcription session
            settings_provider: Returns current Settings or raises ConfigIncompleteError
            preferred_device: Device name to use when none is selected
            flush_timeout: Seconds to let queued audio drain on pause
            state_topic: Pub/sub topic receiving every new SessionStatus
            settings_topic: Pub/sub topic for settings requests
        """
        self.registry = registry
        self.capture = capture
        self.chunk_queue = chunk_queue
        self.service = service
        self.settings_provider = settings_provider
        self.preferred_device = preferred_device
        self.flush_timeout = flush_timeout
        self.state_topic = state_topic
        self.settings_topic = settings_topic

        self._status = SessionStatus()
        self._status_lock = threading.Lock()
        self._commands: "queue.Queue[Optional[Command]]" = queue.Queue()
        self._control_thread: Optional[threading.Thread] = None
        self._capture_ids = itertools.count(1)
        self._settings: Optional[Settings] = None
        self.clock = RecordingClock()
        self.should_quit = threading.Event()

        self._handlers: Dict[CommandType, Callable[[Command], None]] = {
            CommandType.START: self._on_start,
            CommandType.PAUSE: self._on_pause,
            CommandType.RESUME: self._on_resume,
            CommandType.SELECT_DEVICE: self._on_select_device,
            CommandType.OPEN_SETTINGS: self._on_open_settings,
            CommandType.RESET: self._on_reset,
            CommandType.QUIT: self._on_quit,
            CommandType.DISCONNECTED: self._on_disconnected,
            CommandType.RECONNECTED: self._on_reconnected,
            CommandType.RECONNECT_FAILED: self._on_reconnect_failed,
            CommandType.DEVICE_REMOVED: self._on_device_removed,
        }

        pub.subscribe(self._device_removed_listener, registry.removal_topic)

    # -- public API ------------------------------------------------------------

    @property
    def status(self) -> SessionStatus:
        with self._status_lock:
            return self._status

    @property
    def state(self) -> SessionState:
        return self.status.state

    def submit(self, command: Command) -> None:
        """Queue a command or signal; safe from any thread."""
        self._commands.put(command)

    def start(self) -> None:
        """Start the control thread."""
        if self._control_thread and self._control_thread.is_alive():
            return
        self._control_thread = threading.Thread(target=self._control_loop, daemon=True, name="SessionControlThread")
        self._control_thread.start()
        logger.info("Session control thread started")

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted command has been processed."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._commands.unfinished_tasks:
            if deadline is not None and time.monotonic() > deadline:
                return False
            time.sleep(0.01)
        return True

    def join(self, timeout: Optional[float] = None) -> None:
        if self._control_thread:
            self._control_thread.join(timeout)

    def handle(self, command: Command) -> SessionStatus:
        """Apply one command synchronously; the control thread calls this."""
        handler = self._handlers[command.type]
        logger.debug(f"Handling {command.type.value} in {self.state.value}")
        handler(command)
        return self.status

    def _control_loop(self) -> None:
        while True:
            command = self._commands.get()
            try:
                if command is None:
                    break
                try:
                    self.handle(command)
                except Exception as e:
                    logger.error(f"Unhandled error processing {command.type.value}: {e}", exc_info=True)
                    self._enter_error(f"internal error: {e}")
                if command.type is CommandType.QUIT:
                    break
            finally:
                self._commands.task_done()
        logger.info("Session control thread exiting")

    # -- state helpers -----------------------------------------------------------

    def _set_status(self, **changes) -> None:
        with self._status_lock:
            old = self._status
            self._status = old.evolve(**changes)
            new = self._status
        if old.state is not new.state:
            logger.info(f"State: {old.label} -> {new.label}")
        pub.sendMessage(self.state_topic, status=new)

    def _transition(self, state: SessionState, **changes) -> None:
        changes.setdefault("reason", None)
        changes.setdefault("message", None)
        self._set_status(state=state, **changes)

    def _reject(self, command: Command) -> None:
        logger.info(f"Ignoring {command.type.value} while {self.state.value}")

    def _enter_error(self, reason: str, **changes) -> None:
        self._stop_capture(flush=False)
        self._transition(SessionState.ERROR, reason=reason, message=reason, capture_session_id=None, **changes)

    def _current_settings(self) -> Settings:
        settings = self.settings_provider()
        self._settings = settings
        return settings

    def _open_capture(self, device: DeviceDescriptor) -> CaptureSession:
        capture_session = CaptureSession(session_id=next(self._capture_ids), device_id=device.device_id)
        self.chunk_queue.reset(capture_session.session_id)
        try:
            self.capture.open(device, capture_session)
        except DeviceOpenError:
            self.chunk_queue.reset(None)
            raise
        return capture_session

    def _stop_capture(self, flush: bool) -> None:
        if flush:
            self.capture.close()
            if not self.chunk_queue.wait_until_empty(self.flush_timeout):
                logger.info(f"Queued audio not sent within {self.flush_timeout}s, discarding the rest")
            self.chunk_queue.reset(None)
        else:
            # Stop accepting first so a late callback cannot write into the next session
            self.chunk_queue.reset(None)
            self.capture.close()

    def _connect_or_reconnect(self, settings: Settings) -> Optional[SessionState]:
        """Open a session; returns the follow-up state, or None after entering ERROR."""
        try:
            self.service.open_session(settings)
        except AuthError as e:
            logger.error(f"Authentication rejected: {e}")
            self._enter_error("authentication rejected", connected=False)
            return None
        except ConnectError as e:
            logger.warning(f"Connect failed, entering reconnect: {e}")
            self.service.begin_reconnect(settings)
            return SessionState.RECONNECTING
        return SessionState.RECORDING

    # -- user commands -----------------------------------------------------------

    def _on_start(self, command: Command) -> None:
        if self.state is not SessionState.IDLE:
            return self._reject(command)

        try:
            settings = self._current_settings()
        except ConfigIncompleteError as e:
            logger.warning(str(e))
            self._set_status(message=SETTINGS_REQUIRED)
            return

        try:
            device = self.registry.resolve_active(self.preferred_device)
        except DeviceEnumerationError as e:
            logger.error(f"Device enumeration failed: {e}")
            self._set_status(message=f"no audio devices: {e}")
            return
        if device is None:
            self._set_status(message="no input device available")
            return

        try:
            capture_session = self._open_capture(device)
        except DeviceOpenError as e:
            logger.error(str(e))
            self._set_status(message=str(e), device=device)
            return

        try:
            self.service.open_session(settings)
        except (AuthError, ConnectError) as e:
            logger.error(f"Could not open transcription session: {e}")
            self._stop_capture(flush=False)
            message = "authentication rejected" if isinstance(e, AuthError) else str(e)
            self._set_status(message=message, device=device)
            return

        self.clock.start()
        self._transition(
            SessionState.RECORDING,
            device=device,
            capture_session_id=capture_session.session_id,
            connected=True,
        )

    def _on_pause(self, command: Command) -> None:
        if self.state is not SessionState.RECORDING:
            return self._reject(command)
        self._stop_capture(flush=True)
        self.clock.pause()
        self._transition(SessionState.PAUSED, capture_session_id=None)

    def _on_resume(self, command: Command) -> None:
        if self.state is not SessionState.PAUSED:
            return self._reject(command)
        device = self.status.device or self.registry.active_device
        if device is None:
            self._set_status(message="no input device selected")
            return

        try:
            capture_session = self._open_capture(device)
        except DeviceOpenError as e:
            logger.error(str(e))
            self._set_status(message=str(e))
            return

        next_state = SessionState.RECORDING
        if not self.service.is_connected:
            try:
                settings = self._current_settings()
            except ConfigIncompleteError as e:
                logger.warning(str(e))
                self._stop_capture(flush=False)
                self._set_status(message=SETTINGS_REQUIRED)
                return
            next_state = self._connect_or_reconnect(settings)
            if next_state is None:
                return

        self.clock.resume()
        self._transition(
            next_state,
            capture_session_id=capture_session.session_id,
            connected=self.service.is_connected,
        )

    def _on_select_device(self, command: Command) -> None:
        state = self.state
        if state in (SessionState.IDLE, SessionState.ERROR):
            try:
                device = self.registry.select(command.device_id)
            except (DeviceOpenError, DeviceEnumerationError) as e:
                self._set_status(message=str(e))
                return
            self._set_status(device=device, message=None)
            return
        if state not in (SessionState.RECORDING, SessionState.PAUSED, SessionState.RECONNECTING):
            return self._reject(command)

        self._transition(SessionState.SWITCHING_DEVICE, capture_session_id=None)
        if state is SessionState.RECONNECTING:
            self.service.cancel_reconnect()
        self._stop_capture(flush=False)

        try:
            device = self.registry.select(command.device_id)
            capture_session = self._open_capture(device)
        except (DeviceOpenError, DeviceEnumerationError) as e:
            logger.error(f"Device switch failed: {e}")
            self.clock.pause()
            self._transition(SessionState.PAUSED, message=f"could not open device: {e}",
                             connected=self.service.is_connected)
            return

        next_state = SessionState.RECORDING
        if not self.service.is_connected:
            next_state = self._connect_or_reconnect(self._settings or self._current_settings())
            if next_state is None:
                return

        if state is SessionState.PAUSED:
            self.clock.resume()
        self._transition(
            next_state,
            device=device,
            capture_session_id=capture_session.session_id,
            connected=self.service.is_connected,
        )

    def _on_open_settings(self, command: Command) -> None:
        pub.sendMessage(self.settings_topic, status=self.status)

    def _on_reset(self, command: Command) -> None:
        if self.state is not SessionState.ERROR:
            return self._reject(command)
        self.service.close_session()
        self._transition(SessionState.IDLE, capture_session_id=None, connected=False)

    def _on_quit(self, command: Command) -> None:
        logger.info("Quit requested, shutting down pipeline")
        # Order matters: stop accepting chunks, close capture, close the
        # session, then release the queue and device subscriptions.
        self.chunk_queue.reset(None)
        self.capture.close()
        if self.state is SessionState.RECONNECTING:
            self.service.cancel_reconnect()
        self.service.stop()
        self.chunk_queue.close()
        self.registry.stop_watching()
        pub.unsubscribe(self._device_removed_listener, self.registry.removal_topic)
        self.clock.pause()
        self._transition(SessionState.IDLE, capture_session_id=None, connected=False)
        self.should_quit.set()

    # -- pipeline signals --------------------------------------------------------

    def _on_disconnected(self, command: Command) -> None:
        if command.generation is not None and command.generation != self.service.generation:
            logger.debug(f"Ignoring stale disconnect for session {command.generation}")
            return
        if self.state is SessionState.RECORDING:
            self._transition(SessionState.RECONNECTING, connected=False,
                             message=f"connection lost: {command.reason}")
            self.service.begin_reconnect(self._settings or self._current_settings())
        else:
            self._set_status(connected=False)

    def _on_reconnected(self, command: Command) -> None:
        if self.state is not SessionState.RECONNECTING:
            return self._reject(command)
        self._transition(SessionState.RECORDING, connected=True, reconnect_attempt=0)

    def _on_reconnect_failed(self, command: Command) -> None:
        if self.state is not SessionState.RECONNECTING:
            return self._reject(command)
        self._enter_error(command.reason or "reconnect failed", connected=False)

    def _device_removed_listener(self, event: DeviceRemovedEvent) -> None:
        self.submit(Command(CommandType.DEVICE_REMOVED, device_id=event.device_id))

    def _on_device_removed(self, command: Command) -> None:
        device = self.status.device
        if device is None or device.device_id != command.device_id:
            logger.info(f"Inactive device removed: {command.device_id}")
            return
        if self.state is SessionState.IDLE:
            self._set_status(device=None, message="device removed")
            return
        if self.state is SessionState.ERROR:
            return
        if self.state is SessionState.RECONNECTING:
            self.service.cancel_reconnect()
        self.clock.pause()
        self._enter_error("device removed")
