"""Main application entry point for Fortis."""

import sys
import argparse
import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table

from . import __version__
from .audio.capture import CaptureSource
from .audio.chunk_queue import ChunkQueue, capacity_for
from .audio.devices import DeviceRegistry
from .config import FortisConfig
from .errors import DeviceEnumerationError
from .models.session import Command, CommandType
from .services.session_manager import SessionStateMachine
from .services.transcription_service import TranscriptionService
from .transcription import create_endpoint
from .transcription.transcript_log import TranscriptLog
from .ui.keyboard_input import KeyCommandMapper
from .ui.transcription_screen import TranscriptionScreen

logger = logging.getLogger(__name__)


class Application:
    """Wires the capture, network and display contexts together."""

    def __init__(self, config: FortisConfig, device_name: Optional[str] = None):
        self.config = config

        sample_rate = config.get('audio.sample_rate', 16000)
        channels = config.get('audio.channels', 1)
        chunk_duration_ms = config.get('audio.chunk_duration_ms', 100)
        queue_seconds = config.get('audio.queue_seconds', 3.0)
        capacity = capacity_for(queue_seconds, chunk_duration_ms)

        logger.info(f"Audio settings: {sample_rate}Hz, {chunk_duration_ms}ms chunks, {channels} channel(s)")
        logger.info(f"Chunk queue capacity: {capacity} chunks ({queue_seconds}s)")

        self.registry = DeviceRegistry()
        self.chunk_queue = ChunkQueue(capacity=capacity)
        self.capture = CaptureSource(
            self.chunk_queue.push,
            sample_rate=sample_rate,
            chunk_duration_ms=chunk_duration_ms,
            channels=channels,
        )
        self.transcript_log = TranscriptLog()
        self.service = TranscriptionService(
            self.chunk_queue,
            self.transcript_log,
            endpoint_factory=self._create_endpoint,
            signal_callback=self._signal,
            backoff=config.get_backoff_policy(),
            sample_rate=sample_rate,
            # Capture always hands mono chunks to the network side
            channels=1,
            connect_timeout=config.get('network.connect_timeout', 10.0),
            send_timeout=config.get('network.send_timeout', 5.0),
            keep_alive_interval=config.get('network.keep_alive_interval', 3.0),
        )
        self.state_machine = SessionStateMachine(
            self.registry,
            self.capture,
            self.chunk_queue,
            self.service,
            settings_provider=config.get_settings,
            preferred_device=device_name or config.get('audio.device'),
        )
        self.screen = TranscriptionScreen(
            self.state_machine,
            self.transcript_log,
            KeyCommandMapper(self.registry.list_devices),
            capture=self.capture,
            settings_provider=config.get_settings,
            refresh_per_second=config.get('ui.refresh_per_second', 10),
            theme=config.get('ui.theme', 'blue'),
        )

    def _create_endpoint(self):
        return create_endpoint(self.config.get('transcriber.provider', 'deepgram'))

    def _signal(self, command: Command) -> None:
        self.state_machine.submit(command)

    def run(self) -> None:
        logger.info("Starting pipeline...")
        self.service.start()
        self.state_machine.start()
        self.registry.start_watching(self.config.get('audio.device_poll_interval', 2.0))
        try:
            self.screen.run()
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        if not self.state_machine.should_quit.is_set():
            self.state_machine.submit(Command(CommandType.QUIT))
        if not self.state_machine.should_quit.wait(timeout=10.0):
            logger.warning("Session did not shut down cleanly")
        self.state_machine.join(timeout=2.0)
        logger.info("Fortis stopped")


def list_devices(console: Console) -> int:
    """Print the available input devices."""
    registry = DeviceRegistry()
    try:
        devices = registry.list_devices()
        default = registry.default_device()
    except DeviceEnumerationError as e:
        console.print(f"Could not enumerate audio devices: {e}", style="bold red")
        return 1

    table = Table(title="Input devices", header_style="bold magenta")
    table.add_column("Name")
    table.add_column("Id", style="cyan")
    table.add_column("Channels", justify="right")
    table.add_column("Default rate", justify="right")
    for device in devices:
        name = f"{device.name} (default)" if default and default.device_id == device.device_id else device.name
        table.add_row(name, device.device_id, str(device.max_input_channels), f"{device.default_sample_rate:.0f}")
    console.print(table)
    return 0


def setup_logging(config: FortisConfig, level: str = "INFO") -> None:
    """Set up logging configuration from YAML config."""
    log_file_path = config.get_log_file_path()
    console_output = config.get('logging.console_output', False)

    Path(log_file_path).parent.mkdir(parents=True, exist_ok=True)

    handlers = []

    # File handler - always write to file
    file_handler = logging.FileHandler(log_file_path)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
    ))
    handlers.append(file_handler)

    # Console handler is opt-in; stderr shares the terminal with the live display
    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.WARNING)
        console_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        handlers.append(console_handler)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(getattr(logging, level.upper()))
    for handler in handlers:
        root_logger.addHandler(handler)

    logger.info("=" * 50)
    logger.info("Fortis starting up")
    logger.info(f"Log file: {log_file_path}")
    logger.info(f"Log level set to: {level}")
    logger.info("=" * 50)


def main() -> None:
    """Main entry point for Fortis."""
    parser = argparse.ArgumentParser(
        description="Fortis - live microphone transcription in the terminal",
        epilog="Keys: r=start, space=pause/resume, d=device, s=settings, x=reset, q=quit"
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration YAML file (default: built-in defaults)"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Set logging level (overrides config)"
    )
    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="List available input devices and exit"
    )
    parser.add_argument(
        "--device",
        type=str,
        help="Name of the input device to use (overrides config)"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"Fortis v{__version__}"
    )
    args = parser.parse_args()

    console = Console()
    try:
        config = FortisConfig(args.config)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"Configuration error: {e}", style="bold red")
        sys.exit(1)

    setup_logging(config, args.log_level or config.get('logging.level', 'INFO'))

    if args.list_devices:
        sys.exit(list_devices(console))

    app = Application(config, device_name=args.device)
    try:
        app.run()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
        app.shutdown()
    console.print("Goodbye!", style="bold blue")


if __name__ == "__main__":
    main()
