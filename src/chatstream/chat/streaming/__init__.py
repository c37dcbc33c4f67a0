"""Chat streaming package."""

from .normalizer import StreamNormalizer, normalize_stream
from .types import (
    ContentStore,
    DoneEvent,
    ImageEvent,
    MessageStore,
    ReasoningEvent,
    StreamEvent,
    TextEvent,
)

__all__ = [
    "ContentStore",
    "DoneEvent",
    "ImageEvent",
    "MessageStore",
    "ReasoningEvent",
    "StreamEvent",
    "StreamNormalizer",
    "TextEvent",
    "normalize_stream",
]
