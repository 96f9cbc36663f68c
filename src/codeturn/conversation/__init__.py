"""Dialogue history and request preparation."""

from codeturn.conversation.transcript import (
    PreparedRequest,
    StorageMode,
    TranscriptError,
    TranscriptStore,
)

__all__ = [
    "PreparedRequest",
    "StorageMode",
    "TranscriptError",
    "TranscriptStore",
]
