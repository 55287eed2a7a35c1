"""Exception taxonomy for the capture-to-transcript pipeline."""

from typing import Iterable


class FortisError(Exception):
    """Base class for all Fortis errors."""


class ConfigIncompleteError(FortisError):
    """Required settings (API key, language, model) are missing."""

    def __init__(self, missing: Iterable[str]):
        self.missing = sorted(missing)
        super().__init__(f"settings required: missing {', '.join(self.missing)}")


class DeviceEnumerationError(FortisError):
    """The platform audio layer could not be queried."""


class DeviceOpenError(FortisError):
    """An input device could not be opened (unsupported, busy, or denied)."""


class AuthError(FortisError):
    """The transcription endpoint rejected the supplied credentials."""


class ConnectError(FortisError):
    """The transcription endpoint could not be reached."""


class SendError(FortisError):
    """Audio could not be sent because the connection is down."""


class OutOfOrderError(FortisError):
    """A transcript segment would land before already-committed text."""
