"""Unit tests for key mapping and the transcription screen."""

import io
from unittest.mock import Mock

import pytest
from rich.console import Console
from rich.layout import Layout
from rich.panel import Panel
from rich.text import Text

from fortis.models.audio import DeviceDescriptor
from fortis.models.session import CommandType, SessionState, SessionStatus
from fortis.models.transcription import TranscriptEvent
from fortis.services.session_manager import RecordingClock
from fortis.transcription.transcript_log import TranscriptLog
from fortis.ui.keyboard_input import CTRL_C, PAGE_DOWN, PAGE_UP, KeyCommandMapper
from fortis.ui.transcription_screen import TranscriptionScreen, TranscriptView, render_transcript


def make_devices(count):
    return [
        DeviceDescriptor(device_id=f"0:Mic {i}", name=f"Mic {i}", index=i,
                         max_input_channels=1, default_sample_rate=16000.0)
        for i in range(count)
    ]


@pytest.mark.unit
class TestKeyCommandMapper:
    """Test cases for KeyCommandMapper."""

    @pytest.mark.parametrize("key,state,expected", [
        ('r', SessionState.IDLE, CommandType.START),
        (' ', SessionState.RECORDING, CommandType.PAUSE),
        ('p', SessionState.RECORDING, CommandType.PAUSE),
        (' ', SessionState.PAUSED, CommandType.RESUME),
        ('s', SessionState.RECORDING, CommandType.OPEN_SETTINGS),
        ('x', SessionState.ERROR, CommandType.RESET),
        ('q', SessionState.RECORDING, CommandType.QUIT),
        (CTRL_C, SessionState.IDLE, CommandType.QUIT),
    ])
    def test_key_bindings(self, key, state, expected):
        mapper = KeyCommandMapper(lambda: [])
        assert mapper.map_key(key, state).type is expected

    @pytest.mark.parametrize("key,state", [
        ('r', SessionState.RECORDING),
        (' ', SessionState.IDLE),
        (' ', SessionState.RECONNECTING),
        ('x', SessionState.IDLE),
        ('z', SessionState.IDLE),
    ])
    def test_keys_without_effect(self, key, state):
        assert KeyCommandMapper(lambda: []).map_key(key, state) is None

    def test_device_picker(self):
        devices = make_devices(3)
        mapper = KeyCommandMapper(lambda: devices)

        assert mapper.map_key('d', SessionState.RECORDING) is None
        assert mapper.picker_open
        assert mapper.map_key('r', SessionState.IDLE) is None
        assert mapper.map_key('7', SessionState.RECORDING) is None

        command = mapper.map_key('2', SessionState.RECORDING)

        assert command.type is CommandType.SELECT_DEVICE
        assert command.device_id == "0:Mic 1"
        assert not mapper.picker_open

    def test_picker_limited_to_nine(self):
        mapper = KeyCommandMapper(lambda: make_devices(12))
        mapper.open_picker()
        assert len(mapper.picker_devices) == 9

    def test_picker_closes_on_d(self):
        mapper = KeyCommandMapper(lambda: make_devices(2))
        mapper.map_key('d', SessionState.IDLE)
        mapper.map_key('d', SessionState.IDLE)
        assert not mapper.picker_open

    def test_quit_works_inside_picker(self):
        mapper = KeyCommandMapper(lambda: make_devices(2))
        mapper.open_picker()
        assert mapper.map_key('q', SessionState.IDLE).type is CommandType.QUIT

    def test_page_keys_scroll(self):
        mapper = KeyCommandMapper(lambda: [], scroll_step=3)

        assert mapper.map_key(PAGE_UP, SessionState.RECORDING) is None
        assert mapper.map_key(PAGE_UP, SessionState.RECORDING) is None
        assert mapper.scroll_offset == 6

        mapper.map_key(PAGE_DOWN, SessionState.RECORDING)
        assert mapper.scroll_offset == 3
        mapper.map_key(PAGE_DOWN, SessionState.RECORDING)
        mapper.map_key(PAGE_DOWN, SessionState.RECORDING)
        assert mapper.scroll_offset == 0

    def test_clamp_scroll(self):
        mapper = KeyCommandMapper(lambda: [])
        mapper.scroll_offset = 40
        mapper.clamp_scroll(12)
        assert mapper.scroll_offset == 12

    def test_page_keys_leave_picker_open(self):
        mapper = KeyCommandMapper(lambda: make_devices(2))
        mapper.open_picker()
        mapper.map_key(PAGE_UP, SessionState.IDLE)
        assert mapper.picker_open


def numbered_lines(count):
    return Text("\n".join(f"line{i:02d}" for i in range(count)))


def render_to_string(renderable, width=40):
    console = Console(file=io.StringIO(), width=width)
    console.print(renderable)
    return console.file.getvalue()


@pytest.mark.unit
class TestTranscriptView:
    """Test cases for TranscriptView."""

    def test_shows_newest_lines(self):
        output = render_to_string(Panel(TranscriptView(numbered_lines(20)), height=6))

        assert "line16" in output
        assert "line19" in output
        assert "line15" not in output

    def test_scroll_offset_moves_window_up(self):
        output = render_to_string(Panel(TranscriptView(numbered_lines(20), scroll_offset=3), height=6))

        assert "line13" in output
        assert "line16" in output
        assert "line17" not in output
        assert "line12" not in output

    def test_scroll_clamped_to_top(self):
        limits = []
        view = TranscriptView(numbered_lines(20), scroll_offset=100, on_scroll_limit=limits.append)

        output = render_to_string(Panel(view, height=6))

        assert "line00" in output
        assert "line03" in output
        assert "line04" not in output
        assert limits == [16]

    def test_overlay_takes_room_from_transcript(self):
        view = TranscriptView(numbered_lines(20), overlay=Text("picker"))

        output = render_to_string(Panel(view, height=6))

        assert "picker" in output
        assert "line17" in output
        assert "line19" in output
        assert "line16" not in output

    def test_wrapped_text_keeps_tail_visible(self):
        text = Text(" ".join(f"word{i:03d}" for i in range(200)))

        output = render_to_string(Panel(TranscriptView(text), height=6), width=30)

        assert "word199" in output
        assert "word000" not in output

    def test_without_height_renders_everything(self):
        output = render_to_string(TranscriptView(numbered_lines(5)))
        assert all(f"line{i:02d}" in output for i in range(5))


@pytest.fixture
def screen_env():
    log = TranscriptLog()
    machine = Mock()
    machine.status = SessionStatus(state=SessionState.RECORDING, device=make_devices(1)[0], connected=True)
    machine.state = SessionState.RECORDING
    machine.clock = RecordingClock()
    machine.service.reconnect_attempt = 0
    console = Console(file=io.StringIO(), width=100)
    screen = TranscriptionScreen(machine, log, KeyCommandMapper(lambda: make_devices(2)), console=console,
                                 settings_topic="test.ui_settings", chunk_dropped_topic="test.ui_dropped")
    return screen, machine, log


@pytest.mark.unit
class TestTranscriptionScreen:
    """Test cases for TranscriptionScreen."""

    def test_render_transcript_dims_partial(self):
        log = TranscriptLog()
        log.apply(TranscriptEvent.final("hello"))
        log.apply(TranscriptEvent.partial("wor", start=6))

        text = render_transcript(log.snapshot())

        assert text.plain == "hello wor"
        assert any("dim" in str(span.style) for span in text.spans)

    def test_render_empty_transcript(self):
        text = render_transcript(TranscriptLog().snapshot())
        assert text.plain == "Press r to start recording"

    def test_handle_key_submits_command(self, screen_env):
        screen, machine, _ = screen_env

        assert screen.handle_key_input(' ') is True
        assert machine.submit.call_args.args[0].type is CommandType.PAUSE

        assert screen.handle_key_input('q') is False
        assert machine.submit.call_args.args[0].type is CommandType.QUIT

    def test_unmapped_key_submits_nothing(self, screen_env):
        screen, machine, _ = screen_env
        assert screen.handle_key_input('z') is True
        machine.submit.assert_not_called()

    def test_update_display_renders_all_panels(self, screen_env):
        screen, _, log = screen_env
        log.apply(TranscriptEvent.final("hello world"))
        layout = screen.create_layout()

        screen.update_display(layout)
        screen.console.print(layout)
        output = screen.console.file.getvalue()

        assert "hello world" in output
        assert "Mic 0" in output
        assert "Recording" in output

    def test_settings_and_drop_events(self, screen_env):
        from pubsub import pub
        from fortis.models.events import ChunkDroppedEvent

        screen, machine, _ = screen_env

        pub.sendMessage("test.ui_settings", status=machine.status)
        pub.sendMessage("test.ui_dropped", event=ChunkDroppedEvent(total_dropped=4, newly_dropped=4))

        assert screen.show_settings
        assert screen.dropped_chunks == 4
        # No settings provider configured
        assert screen.render_settings().title == "Settings"

    def test_error_state_shows_reason(self, screen_env):
        screen, machine, _ = screen_env
        machine.status = SessionStatus(state=SessionState.ERROR, reason="device removed")
        layout = screen.create_layout()

        screen.update_display(layout)
        screen.console.print(layout)

        assert "device removed" in screen.console.file.getvalue()

    def test_long_transcript_keeps_partial_visible(self, screen_env):
        screen, _, log = screen_env
        for i in range(300):
            log.apply(TranscriptEvent.final(f"word{i:03d}", start=log.committed_end + (1 if i else 0)))
        log.apply(TranscriptEvent.partial("latest", start=log.committed_end + 1))
        layout = screen.create_layout()

        screen.update_display(layout)
        screen.console.print(layout)
        output = screen.console.file.getvalue()

        assert "latest" in output
        assert "word299" in output
        assert "word000" not in output

    def test_page_up_scrolls_panel(self, screen_env):
        screen, machine, log = screen_env
        for i in range(300):
            log.apply(TranscriptEvent.final(f"word{i:03d}", start=log.committed_end + (1 if i else 0)))
        layout = screen.create_layout()

        for _ in range(200):
            assert screen.handle_key_input(PAGE_UP) is True
        screen.update_display(layout)
        screen.console.print(layout)
        output = screen.console.file.getvalue()

        machine.submit.assert_not_called()
        assert "word000" in output
        assert "word299" not in output
        assert "scrolled" in output
