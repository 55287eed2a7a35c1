"""Audio input device enumeration and removal monitoring."""

import logging
import threading
from typing import Callable, Dict, List, Optional

import pyaudio
from pubsub import pub

from ..errors import DeviceEnumerationError, DeviceOpenError
from ..models.audio import DeviceDescriptor
from ..models.events import DEVICE_REMOVED_TOPIC, DeviceRemovedEvent

logger = logging.getLogger(__name__)

# Rates checked for the capability set of each device
CANDIDATE_SAMPLE_RATES = (8000, 16000, 22050, 44100, 48000)


def make_device_id(host_api: int, name: str) -> str:
    return f"{host_api}:{name}"


class DeviceRegistry:
    """Enumerates input devices and reports devices that disappear.

    Every enumeration creates a fresh PortAudio instance, since PortAudio only
    notices hot-plugged hardware on re-initialization.

    ``poll()`` compares against its own baseline: every device any enumeration
    has seen since the last poll. Enumerations made elsewhere (the device
    picker, ``select``) only add to that baseline, so a removal between two
    polls is always reported.
    """

    def __init__(
        self,
        audio_interface_factory: Callable[[], pyaudio.PyAudio] = pyaudio.PyAudio,
        removal_topic: str = DEVICE_REMOVED_TOPIC,
    ):
        """Initialize device registry.

        Args:
            audio_interface_factory: Creates a PortAudio handle (mocked in tests)
            removal_topic: Pub/sub topic for DeviceRemovedEvent messages
        """
        self.audio_interface_factory = audio_interface_factory
        self.removal_topic = removal_topic

        self._lock = threading.Lock()
        self._known: Dict[str, DeviceDescriptor] = {}
        self._baseline: Dict[str, DeviceDescriptor] = {}
        self._active: Optional[DeviceDescriptor] = None

        self._watch_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def list_devices(self) -> List[DeviceDescriptor]:
        """Query the platform audio layer for input-capable devices."""
        try:
            audio = self.audio_interface_factory()
        except Exception as e:
            raise DeviceEnumerationError(f"Audio subsystem unavailable: {e}") from e

        try:
            devices = []
            for index in range(audio.get_device_count()):
                info = audio.get_device_info_by_index(index)
                if int(info.get("maxInputChannels", 0)) <= 0:
                    continue
                devices.append(self._describe(audio, info))
        except DeviceEnumerationError:
            raise
        except Exception as e:
            raise DeviceEnumerationError(f"Failed to enumerate audio devices: {e}") from e
        finally:
            audio.terminate()

        with self._lock:
            self._known = {device.device_id: device for device in devices}
            for device in devices:
                self._baseline.setdefault(device.device_id, device)
            if self._active is not None and self._active.device_id in self._known:
                self._active = self._known[self._active.device_id]
        logger.debug(f"Enumerated {len(devices)} input devices")
        return devices

    def default_device(self) -> Optional[DeviceDescriptor]:
        """The platform default input device, if there is one."""
        try:
            audio = self.audio_interface_factory()
        except Exception as e:
            raise DeviceEnumerationError(f"Audio subsystem unavailable: {e}") from e
        try:
            info = audio.get_default_input_device_info()
            return self._describe(audio, info)
        except IOError:
            logger.info("No default input device available")
            return None
        finally:
            audio.terminate()

    def _describe(self, audio: pyaudio.PyAudio, info: dict) -> DeviceDescriptor:
        index = int(info["index"])
        channels = int(info.get("maxInputChannels", 0))
        host_api = int(info.get("hostApi", 0))
        rates = set()
        for rate in CANDIDATE_SAMPLE_RATES:
            try:
                if audio.is_format_supported(
                    rate,
                    input_device=index,
                    input_channels=1,
                    input_format=pyaudio.paInt16,
                ):
                    rates.add(rate)
            except ValueError:
                continue
        return DeviceDescriptor(
            device_id=make_device_id(host_api, info["name"]),
            name=info["name"],
            index=index,
            max_input_channels=channels,
            default_sample_rate=float(info.get("defaultSampleRate", 0.0)),
            sample_rates=frozenset(rates),
            host_api=host_api,
        )

    def find_device(self, device_id: str) -> Optional[DeviceDescriptor]:
        with self._lock:
            known = self._known.get(device_id)
        if known is not None:
            return known
        for device in self.list_devices():
            if device.device_id == device_id:
                return device
        return None

    @property
    def active_device(self) -> Optional[DeviceDescriptor]:
        with self._lock:
            return self._active

    def select(self, device_id: str) -> DeviceDescriptor:
        """Make ``device_id`` the active device."""
        device = self.find_device(device_id)
        if device is None:
            raise DeviceOpenError(f"Unknown input device: {device_id}")
        with self._lock:
            self._active = device
        logger.info(f"Active input device: {device.name}")
        return device

    def resolve_active(self, preferred_name: Optional[str] = None) -> Optional[DeviceDescriptor]:
        """Return the active device, choosing the preferred or default one if unset."""
        active = self.active_device
        if active is not None:
            return active
        # Enumerating first also records the baseline that poll() compares against
        devices = self.list_devices()
        device = None
        if preferred_name:
            device = next((d for d in devices if d.name == preferred_name), None)
            if device is None:
                logger.warning(f"Configured device '{preferred_name}' not found, using default")
        if device is None:
            default = self.default_device()
            if default is not None:
                device = next((d for d in devices if d.device_id == default.device_id), default)
        if device is None and devices:
            device = devices[0]
        if device is not None:
            with self._lock:
                self._active = device
        return device

    def poll(self) -> List[str]:
        """Re-enumerate once and publish removal events.

        Returns:
            Ids of devices that disappeared since the previous poll.
        """
        devices = self.list_devices()
        current = {device.device_id for device in devices}
        with self._lock:
            previous = self._baseline
            self._baseline = {device.device_id: device for device in devices}
        removed = [device_id for device_id in previous if device_id not in current]
        for device_id in removed:
            logger.warning(f"Input device removed: {previous[device_id].name}")
            pub.sendMessage(
                self.removal_topic,
                event=DeviceRemovedEvent(device_id=device_id, device_name=previous[device_id].name),
            )
        return removed

    def start_watching(self, interval: float = 2.0) -> None:
        """Poll for device removal in a background thread."""
        if self._watch_thread and self._watch_thread.is_alive():
            return
        self._stop_event.clear()
        self._watch_thread = threading.Thread(
            target=self._watch_loop, args=(interval,), daemon=True, name="DeviceWatchThread"
        )
        self._watch_thread.start()
        logger.info(f"Device watcher started (interval={interval}s)")

    def stop_watching(self) -> None:
        self._stop_event.set()
        if self._watch_thread and self._watch_thread.is_alive():
            self._watch_thread.join(timeout=2.0)
            if self._watch_thread.is_alive():
                logger.warning("Device watch thread did not stop cleanly")
        self._watch_thread = None

    def _watch_loop(self, interval: float) -> None:
        while not self._stop_event.wait(interval):
            try:
                self.poll()
            except DeviceEnumerationError as e:
                logger.warning(f"Device poll failed: {e}")
