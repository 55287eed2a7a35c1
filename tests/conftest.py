"""Pytest configuration and fixtures for Fortis tests."""

import logging
import time

import numpy as np
import pytest
from pubsub import pub

from fortis.models.audio import CaptureSession, DeviceDescriptor
from fortis.models.settings import Settings

from .fakes import FakeAudioSystem, FakeEndpointFactory, make_device_info


# Configure logging for tests
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without hardware or network")
    config.addinivalue_line("markers", "integration: multi-threaded pipeline tests")
    config.addinivalue_line("markers", "hardware: requires a real microphone")


@pytest.fixture(autouse=True)
def reset_pubsub():
    """Drop listeners registered by a test so they cannot leak into the next one."""
    yield
    pub.unsubAll()


@pytest.fixture
def audio_system():
    """Two mono input devices plus one output-only device."""
    return FakeAudioSystem([
        make_device_info(0, "USB Microphone"),
        make_device_info(1, "Speakers", channels=0),
        make_device_info(2, "Headset Mic", channels=2),
    ])


@pytest.fixture
def endpoint_factory():
    return FakeEndpointFactory()


@pytest.fixture
def settings():
    return Settings(api_key="test-key", language="en-US", model="nova-2")


@pytest.fixture
def device():
    return DeviceDescriptor(
        device_id="0:USB Microphone",
        name="USB Microphone",
        index=0,
        max_input_channels=1,
        default_sample_rate=16000.0,
        sample_rates=frozenset({16000, 44100, 48000}),
    )


@pytest.fixture
def capture_session():
    return CaptureSession(session_id=1, device_id="0:USB Microphone")


@pytest.fixture
def wait_for():
    """Poll ``predicate`` until it is true or ``timeout`` expires."""
    def _wait_for(predicate, timeout: float = 3.0, interval: float = 0.01) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()
    return _wait_for


@pytest.fixture
def audio_test_data():
    """Generate various audio test data patterns."""
    def generate_audio(pattern="sine", duration_seconds=0.1, sample_rate=16000, channels=1, value=None):
        """Generate audio data for testing.

        Args:
            pattern: Type of audio pattern ('sine', 'noise', 'silence', 'constant')
            duration_seconds: Duration of audio
            sample_rate: Sample rate in Hz
            channels: Interleaved channel count
            value: Sample value for the 'constant' pattern

        Returns:
            bytes: Interleaved 16-bit audio data
        """
        samples = int(round(duration_seconds * sample_rate))

        if pattern == "sine":
            t = np.linspace(0, duration_seconds, samples, False)
            wave_data = (np.sin(2 * np.pi * 440 * t) * 32767).astype(np.int16)
        elif pattern == "noise":
            wave_data = (np.random.uniform(-1, 1, samples) * 32767).astype(np.int16)
        elif pattern == "silence":
            wave_data = np.zeros(samples, dtype=np.int16)
        elif pattern == "constant":
            wave_data = np.full(samples, value or 0, dtype=np.int16)
        else:
            raise ValueError(f"Unknown pattern: {pattern}")

        if channels > 1:
            wave_data = np.repeat(wave_data, channels)
        return wave_data.tobytes()

    return generate_audio
