"""Terminal display and keyboard input."""

from .keyboard_input import KeyboardInputHandler, KeyCommandMapper
from .transcription_screen import TranscriptionScreen, render_transcript

__all__ = [
    "KeyboardInputHandler",
    "KeyCommandMapper",
    "TranscriptionScreen",
    "render_transcript",
]
