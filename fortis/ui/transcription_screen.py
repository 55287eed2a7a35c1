"""Terminal-based transcription screen with real-time transcript display."""

import time
import logging
from typing import Callable, Optional

from pubsub import pub
from rich.align import Align
from rich.console import Console, ConsoleOptions, RenderableType, RenderResult
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.segment import Segment
from rich.table import Table
from rich.text import Text

from .keyboard_input import KeyCommandMapper, KeyboardInputHandler
from ..audio.capture import CaptureSource
from ..errors import ConfigIncompleteError
from ..models.events import CHUNK_DROPPED_TOPIC, OPEN_SETTINGS_TOPIC, ChunkDroppedEvent
from ..models.session import CommandType, SessionState, SessionStatus
from ..models.settings import Settings
from ..models.transcription import TranscriptSnapshot
from ..services.session_manager import SessionStateMachine
from ..transcription.transcript_log import TranscriptLog

logger = logging.getLogger(__name__)

STATE_STYLES = {
    SessionState.IDLE: "bold yellow",
    SessionState.RECORDING: "bold red",
    SessionState.PAUSED: "bold cyan",
    SessionState.RECONNECTING: "bold magenta",
    SessionState.SWITCHING_DEVICE: "bold magenta",
    SessionState.ERROR: "bold white on red",
}


def render_transcript(snapshot: TranscriptSnapshot, empty_hint: str = "Press r to start recording") -> Text:
    """Committed text followed by the dimmed partial."""
    if not snapshot.committed_text and not snapshot.partial:
        return Text(empty_hint, style="dim white italic")
    text = Text(snapshot.committed_text, style="white")
    if snapshot.partial:
        text.append(snapshot.partial_gap)
        text.append(snapshot.partial.text, style="dim italic")
    return text


class TranscriptView:
    """Shows as much of the transcript tail as fits the height it is given.

    An optional overlay (device picker, settings) is drawn above the text and
    takes its lines from the transcript's share. ``scroll_offset`` moves the
    window up by that many wrapped lines; it is clamped to the top of the text
    and the largest usable offset is reported through ``on_scroll_limit``.
    """

    def __init__(self,
                 text: Text,
                 scroll_offset: int = 0,
                 overlay: Optional[RenderableType] = None,
                 on_scroll_limit: Optional[Callable[[int], None]] = None):
        self.text = text
        self.scroll_offset = scroll_offset
        self.overlay = overlay
        self.on_scroll_limit = on_scroll_limit

    def __rich_console__(self, console: Console, options: ConsoleOptions) -> RenderResult:
        render_options = options.update(height=None)
        lines = []
        if self.overlay is not None:
            lines.extend(console.render_lines(self.overlay, render_options, pad=False))
        body = console.render_lines(self.text, render_options, pad=False)

        if options.height is None:
            lines.extend(body)
        else:
            room = max(0, options.height - len(lines))
            limit = max(0, len(body) - room)
            if self.on_scroll_limit is not None:
                self.on_scroll_limit(limit)
            end = len(body) - min(self.scroll_offset, limit)
            lines.extend(body[max(0, end - room):end])
            lines = lines[:options.height]

        for line in lines:
            yield from line
            yield Segment.line()


class TranscriptionScreen:
    """Rich live view over the session status and transcript log.

    The display context only reads: it polls the state machine's immutable
    status and the log's snapshot each refresh, and sends commands through
    ``submit``.
    """

    def __init__(self,
                 state_machine: SessionStateMachine,
                 transcript_log: TranscriptLog,
                 key_mapper: KeyCommandMapper,
                 capture: Optional[CaptureSource] = None,
                 settings_provider: Optional[Callable[[], Settings]] = None,
                 refresh_per_second: int = 10,
                 theme: str = "blue",
                 console: Optional[Console] = None,
                 settings_topic: str = OPEN_SETTINGS_TOPIC,
                 chunk_dropped_topic: str = CHUNK_DROPPED_TOPIC):
        self.state_machine = state_machine
        self.transcript_log = transcript_log
        self.key_mapper = key_mapper
        self.capture = capture
        self.settings_provider = settings_provider
        self.refresh_per_second = refresh_per_second
        self.theme = theme
        self.console = console or Console()
        self.settings_topic = settings_topic
        self.chunk_dropped_topic = chunk_dropped_topic

        self.show_settings = False
        self.dropped_chunks = 0
        self.input_handler: Optional[KeyboardInputHandler] = None

        pub.subscribe(self._on_open_settings, settings_topic)
        pub.subscribe(self._on_chunk_dropped, chunk_dropped_topic)

    def _on_open_settings(self, status: SessionStatus) -> None:
        self.show_settings = not self.show_settings

    def _on_chunk_dropped(self, event: ChunkDroppedEvent) -> None:
        self.dropped_chunks = event.total_dropped

    def create_layout(self) -> Layout:
        """Create the main UI layout."""
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="main", ratio=1),
            Layout(name="footer", size=3)
        )
        layout["main"].split_row(
            Layout(name="status_panel", ratio=1),
            Layout(name="transcription_panel", ratio=3)
        )
        return layout

    def render_header(self, status: SessionStatus) -> Panel:
        header_text = Text.assemble(
            ("Fortis - Live Transcription", f"bold {self.theme}"),
            "  |  ",
            (status.label, STATE_STYLES.get(status.state, "bold")),
        )
        if status.message and status.state is not SessionState.ERROR:
            header_text.append(f"  |  {status.message}", style="yellow")
        return Panel(Align.center(header_text), style=f"bright_{self.theme}")

    def render_status(self, status: SessionStatus) -> Panel:
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="white")

        table.add_row("Device", status.device.name if status.device else "none")
        table.add_row("State", status.label)
        table.add_row("Time", self.state_machine.clock.format())
        table.add_row("Connection", "connected" if status.connected else "offline")
        if status.state is SessionState.RECONNECTING:
            table.add_row("Attempt", str(self.state_machine.service.reconnect_attempt))
        if self.capture is not None and self.capture.is_open:
            stats = self.capture.get_capture_stats()
            peak_bar = "#" * int(stats.peak_level * 20)
            table.add_row("Level", f"{peak_bar:<20}")
            table.add_row("Overflows", str(stats.overflow_count))
        table.add_row("Dropped", str(self.dropped_chunks))
        if status.state is SessionState.ERROR:
            table.add_row("Error", Text(status.reason or "unknown", style="bold red"))

        return Panel(table, title="Session", border_style="green")

    def render_device_picker(self) -> Panel:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("#", style="bold")
        table.add_column("Device")
        table.add_column("Channels", justify="right")
        active = self.state_machine.status.device
        for index, device in enumerate(self.key_mapper.picker_devices, start=1):
            marker = " *" if active and active.device_id == device.device_id else ""
            table.add_row(str(index), f"{device.name}{marker}", str(device.max_input_channels))
        if not self.key_mapper.picker_devices:
            return Panel(Text("No input devices found", style="yellow"), title="Select device")
        return Panel(table, title="Select device (1-9, d to close)", border_style="magenta")

    def render_settings(self) -> Panel:
        if self.settings_provider is None:
            return Panel(Text("No settings available"), title="Settings")
        try:
            settings = self.settings_provider()
        except ConfigIncompleteError as e:
            return Panel(Text(str(e), style="bold yellow"), title="Settings", border_style="yellow")
        table = Table(show_header=False, box=None)
        table.add_column("Key", style="cyan")
        table.add_column("Value")
        table.add_row("Provider", settings.provider)
        table.add_row("Language", settings.language)
        table.add_row("Model", settings.model)
        table.add_row("API key", "configured")
        table.add_row("Theme", settings.theme)
        return Panel(table, title="Settings (s to close)", border_style="yellow")

    def render_transcript_panel(self) -> Panel:
        overlay = None
        if self.key_mapper.picker_open:
            overlay = self.render_device_picker()
        elif self.show_settings:
            overlay = self.render_settings()
        view = TranscriptView(render_transcript(self.transcript_log.snapshot()),
                              scroll_offset=self.key_mapper.scroll_offset,
                              overlay=overlay,
                              on_scroll_limit=self.key_mapper.clamp_scroll)
        title = "Transcript" if self.key_mapper.scroll_offset == 0 else "Transcript (scrolled, PgDn to follow)"
        return Panel(view, title=title, border_style=self.theme)

    def render_footer(self) -> Panel:
        controls = Text.assemble(
            ("r", "bold green"), " Start  ",
            ("SPACE", "bold green"), " Pause/Resume  ",
            ("d", "bold magenta"), " Device  ",
            ("s", "bold yellow"), " Settings  ",
            ("x", "bold blue"), " Reset  ",
            ("PgUp/PgDn", "bold cyan"), " Scroll  ",
            ("q", "bold red"), " Quit"
        )
        return Panel(Align.center(controls), style="bright_black")

    def update_display(self, layout: Layout) -> None:
        status = self.state_machine.status
        layout["header"].update(self.render_header(status))
        layout["status_panel"].update(self.render_status(status))
        layout["transcription_panel"].update(self.render_transcript_panel())
        layout["footer"].update(self.render_footer())

    def handle_key_input(self, key: str) -> bool:
        """Handle a key press. Returns True to continue, False to quit."""
        command = self.key_mapper.map_key(key, self.state_machine.state)
        if command is None:
            return True
        logger.info(f"Key {key!r} -> {command.type.value}")
        self.state_machine.submit(command)
        return command.type is not CommandType.QUIT

    def run(self) -> None:
        """Run the live display until the state machine finishes quitting."""
        layout = self.create_layout()
        self.input_handler = KeyboardInputHandler(self.handle_key_input)
        self.input_handler.start()
        interval = 1.0 / max(1, self.refresh_per_second)

        try:
            with Live(layout, console=self.console, refresh_per_second=self.refresh_per_second, screen=True):
                while not self.state_machine.should_quit.is_set():
                    self.update_display(layout)
                    time.sleep(interval)
        finally:
            self.cleanup()

    def cleanup(self) -> None:
        if self.input_handler:
            self.input_handler.stop()
        pub.unsubscribe(self._on_open_settings, self.settings_topic)
        pub.unsubscribe(self._on_chunk_dropped, self.chunk_dropped_topic)
        logger.info("TranscriptionScreen cleanup completed")
