"""Keyboard input handling and key-to-command mapping for the terminal UI."""

import sys
import threading
import logging
from typing import Callable, List, Optional, Sequence

from ..models.audio import DeviceDescriptor
from ..models.session import Command, CommandType, SessionState

logger = logging.getLogger(__name__)

CTRL_C = '\x03'
ESCAPE = '\x1b'
PAGE_UP = '\x1b[5~'
PAGE_DOWN = '\x1b[6~'
MAX_PICKER_DEVICES = 9
MAX_ESCAPE_LENGTH = 6

# Second byte of msvcrt extended keys
WINDOWS_EXTENDED_KEYS = {'I': PAGE_UP, 'Q': PAGE_DOWN}


class KeyCommandMapper:
    """Translates single key presses into session commands.

    Keys:
        r           start recording (from Idle)
        space / p   pause or resume
        d           toggle the device picker; digits 1-9 then choose a device
        s           open settings
        x           reset after an error
        PgUp / PgDn scroll the transcript back and forward
        q / Ctrl+C  quit

    ``scroll_offset`` counts lines above the bottom of the transcript; 0
    follows new text.
    """

    def __init__(self, devices_provider: Callable[[], Sequence[DeviceDescriptor]], scroll_step: int = 5):
        self.devices_provider = devices_provider
        self.scroll_step = scroll_step
        self.scroll_offset = 0
        self.picker_open = False
        self.picker_devices: List[DeviceDescriptor] = []

    def clamp_scroll(self, limit: int) -> None:
        """Keep the offset within the lines the transcript actually has."""
        self.scroll_offset = max(0, min(self.scroll_offset, limit))

    def open_picker(self) -> None:
        self.picker_devices = list(self.devices_provider())[:MAX_PICKER_DEVICES]
        self.picker_open = True

    def close_picker(self) -> None:
        self.picker_open = False
        self.picker_devices = []

    def map_key(self, key: str, state: SessionState) -> Optional[Command]:
        """Return the command for ``key`` in ``state``, or None if the key does nothing."""
        if key in ('q', CTRL_C):
            return Command(CommandType.QUIT)
        if key == PAGE_UP:
            self.scroll_offset += self.scroll_step
            return None
        if key == PAGE_DOWN:
            self.scroll_offset = max(0, self.scroll_offset - self.scroll_step)
            return None

        if self.picker_open:
            if key.isdigit() and key != '0':
                index = int(key) - 1
                if index < len(self.picker_devices):
                    device = self.picker_devices[index]
                    self.close_picker()
                    return Command.select_device(device.device_id)
                return None
            if key in ('d', ESCAPE):
                self.close_picker()
            return None

        if key == 'r' and state is SessionState.IDLE:
            return Command(CommandType.START)
        if key in (' ', 'p'):
            if state is SessionState.RECORDING:
                return Command(CommandType.PAUSE)
            if state is SessionState.PAUSED:
                return Command(CommandType.RESUME)
            return None
        if key == 'd':
            self.open_picker()
            return None
        if key == 's':
            return Command(CommandType.OPEN_SETTINGS)
        if key == 'x' and state is SessionState.ERROR:
            return Command(CommandType.RESET)
        return None


class KeyboardInputHandler:
    """Read single key presses from the terminal in a background thread."""

    def __init__(self, callback: Callable[[str], bool]):
        """Initialize keyboard handler.

        Args:
            callback: Function that takes a key and returns True to continue, False to quit
        """
        self.callback = callback
        self.running = False
        self.thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the keyboard input handler."""
        if self.running:
            return

        self.running = True
        self.thread = threading.Thread(target=self._input_loop, daemon=True, name="KeyboardInputThread")
        self.thread.start()
        logger.info("Keyboard input handler started")

    def stop(self) -> None:
        """Stop the keyboard input handler."""
        self.running = False
        if self.thread and self.thread is not threading.current_thread():
            self.thread.join(timeout=1.0)
        logger.info("Keyboard input handler stopped")

    def _input_loop(self) -> None:
        logger.info("Starting keyboard input loop")
        while self.running:
            try:
                key = self._get_key()
            except OSError as e:
                logger.error(f"Keyboard input unavailable: {e}")
                break
            if key:
                logger.debug(f"Key detected: {key!r}")
                if not self.callback(key):
                    logger.info("Callback returned False, breaking input loop")
                    break
        self.running = False
        logger.info("Keyboard input loop ended")

    def _get_key(self) -> Optional[str]:
        """Get a single keypress in a cross-platform way."""
        if sys.platform == "win32":
            return self._get_key_windows()
        return self._get_key_unix()

    def _get_key_windows(self) -> Optional[str]:
        import msvcrt
        import time

        if msvcrt.kbhit():
            key = msvcrt.getwch()
            if key in ('\x00', '\xe0'):
                return WINDOWS_EXTENDED_KEYS.get(msvcrt.getwch())
            return key.lower()
        time.sleep(0.05)
        return None

    def _get_key_unix(self) -> Optional[str]:
        import select
        import termios
        import tty

        if not sys.stdin.isatty():
            raise OSError("stdin is not a terminal")

        fd = sys.stdin.fileno()
        old_settings = termios.tcgetattr(fd)
        try:
            # cbreak keeps output processing so the live display is not garbled
            tty.setcbreak(fd)
            if select.select([sys.stdin], [], [], 0.1)[0]:
                key = sys.stdin.read(1)
                if key != ESCAPE:
                    return key.lower()
                # Collect the rest of an escape sequence such as PgUp
                while len(key) < MAX_ESCAPE_LENGTH and select.select([sys.stdin], [], [], 0.01)[0]:
                    key += sys.stdin.read(1)
                    if len(key) > 2 and (key[-1].isalpha() or key[-1] == '~'):
                        break
                return key
        finally:
            termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)
        return None
