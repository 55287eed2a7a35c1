"""Transcription module for Fortis."""

from .base import AbstractTranscriptionEndpoint
from .deepgram_endpoint import DeepgramEndpoint
from .google_backend import GoogleStreamingEndpoint
from .session import TranscriptionSession
from .transcript_log import TranscriptLog, reduce_event

ENDPOINTS = {
    DeepgramEndpoint.name: DeepgramEndpoint,
    GoogleStreamingEndpoint.name: GoogleStreamingEndpoint,
}


def create_endpoint(provider: str) -> AbstractTranscriptionEndpoint:
    """Create a transcription endpoint for ``provider``."""
    try:
        endpoint_class = ENDPOINTS[provider]
    except KeyError:
        raise ValueError(f"Unknown transcription provider '{provider}' "
                         f"(expected one of {', '.join(sorted(ENDPOINTS))})") from None
    return endpoint_class()


__all__ = [
    "AbstractTranscriptionEndpoint",
    "DeepgramEndpoint",
    "GoogleStreamingEndpoint",
    "TranscriptionSession",
    "TranscriptLog",
    "reduce_event",
    "create_endpoint",
]
