"""Audio device, capture and buffering module."""

from .capture import CaptureSource, ChunkFramer
from .chunk_queue import ChunkQueue, capacity_for
from .devices import DeviceRegistry

__all__ = [
    'CaptureSource',
    'ChunkFramer',
    'ChunkQueue',
    'capacity_for',
    'DeviceRegistry',
]
