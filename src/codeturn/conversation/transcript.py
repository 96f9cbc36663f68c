"""
codeturn — transcript store

File: src/codeturn/conversation/transcript.py

Purpose
- Ordered, append-only dialogue history for one session.
- Prepare the outgoing item list for the next backend request in either
  stateless (full transcript) or stateful (delta + previous response id) mode.

Contracts
- Insertion order is dialogue causality; items are never reordered.
- Item ids are unique; each call id receives at most one output item.
- Appends are serialized by a lock so concurrent producers cannot interleave
  partial state.
"""

from __future__ import annotations

import enum
import threading
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from codeturn.domain.items import (
    ConversationItem,
    ItemStatus,
    ToolCallItem,
    is_conversation_item,
    is_tool_call,
    is_tool_output,
    item_from_dict,
)


class StorageMode(enum.Enum):
    STATELESS = "stateless"
    STATEFUL = "stateful"


class TranscriptError(RuntimeError):
    """Raised when an append would break transcript invariants."""


@dataclass(frozen=True, slots=True)
class PreparedRequest:
    """Items to send for the next request and the optional back-reference."""

    items: tuple[ConversationItem, ...]
    previous_response_id: str | None = None

    @property
    def is_delta(self) -> bool:
        return self.previous_response_id is not None


class TranscriptStore:
    """Append-only conversation history with request preparation."""

    def __init__(
        self,
        *,
        mode: StorageMode | str = StorageMode.STATELESS,
        items: Iterable[ConversationItem] = (),
        logger: Any | None = None,
    ) -> None:
        self._mode = mode if isinstance(mode, StorageMode) else StorageMode(mode)
        self._lock = threading.Lock()
        self._items: list[ConversationItem] = []
        self._index_by_id: dict[str, int] = {}
        self._calls: dict[str, int] = {}
        self._answered: set[str] = set()
        self._ack_length = 0
        self._last_response_id: str | None = None
        self._last_backend_id: str | None = None
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        for item in items:
            self.append(item)

    @property
    def mode(self) -> StorageMode:
        return self._mode

    @property
    def last_response_id(self) -> str | None:
        with self._lock:
            return self._last_response_id

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __iter__(self) -> Iterator[ConversationItem]:
        return iter(self.items())

    def items(self) -> tuple[ConversationItem, ...]:
        with self._lock:
            return tuple(self._items)

    def get(self, item_id: str) -> ConversationItem | None:
        with self._lock:
            index = self._index_by_id.get(item_id)
            return None if index is None else self._items[index]

    def append(self, item: ConversationItem) -> ConversationItem:
        return self.extend((item,))[0]

    def extend(self, items: Iterable[ConversationItem]) -> tuple[ConversationItem, ...]:
        """Append ``items`` in order; a batch that fails validation appends nothing."""
        batch = tuple(items)
        for item in batch:
            if not is_conversation_item(item):
                raise TypeError(f"not a conversation item: {type(item).__name__}")
        with self._lock:
            self._check_batch_locked(batch)
            for item in batch:
                index = len(self._items)
                self._items.append(item)
                self._index_by_id[item.id] = index
                if is_tool_call(item):
                    self._calls[item.call_id] = index  # type: ignore[union-attr]
                elif is_tool_output(item):
                    self._answered.add(item.call_id)  # type: ignore[union-attr]
        return batch

    def _check_batch_locked(self, batch: tuple[ConversationItem, ...]) -> None:
        ids: set[str] = set()
        calls: set[str] = set()
        answered: set[str] = set()
        for item in batch:
            if item.id in self._index_by_id or item.id in ids:
                raise TranscriptError(f"duplicate item id: {item.id}")
            ids.add(item.id)
            if is_tool_call(item):
                call_id = item.call_id  # type: ignore[union-attr]
                if call_id in self._calls or call_id in calls:
                    raise TranscriptError(f"duplicate call id: {call_id}")
                calls.add(call_id)
            elif is_tool_output(item):
                call_id = item.call_id  # type: ignore[union-attr]
                if call_id in self._answered or call_id in answered:
                    raise TranscriptError(f"call {call_id} already has an output")
                answered.add(call_id)

    def annotate_status(self, item_id: str, status: ItemStatus) -> ConversationItem:
        """Replace the stored item with a copy that differs only in ``status``."""
        with self._lock:
            index = self._index_by_id.get(item_id)
            if index is None:
                raise KeyError(item_id)
            updated = self._items[index].with_status(status)
            self._items[index] = updated
            return updated

    def call_for(self, call_id: str) -> ToolCallItem | None:
        with self._lock:
            index = self._calls.get(call_id)
            if index is None:
                return None
            return self._items[index]  # type: ignore[return-value]

    def has_output(self, call_id: str) -> bool:
        with self._lock:
            return call_id in self._answered

    def unresolved_calls(self) -> tuple[ToolCallItem, ...]:
        """Tool calls without an output item, in transcript order."""
        with self._lock:
            pending = sorted(
                index for call_id, index in self._calls.items() if call_id not in self._answered
            )
            return tuple(self._items[index] for index in pending)  # type: ignore[misc]

    def acknowledge(self, response_id: str, backend_id: str) -> None:
        """Record that ``response_id`` from ``backend_id`` covers everything so far."""
        if not isinstance(response_id, str) or not response_id.strip():
            raise ValueError("response_id must be a non-empty string")
        with self._lock:
            self._last_response_id = response_id
            self._last_backend_id = backend_id
            self._ack_length = len(self._items)
        self._logger.debug(
            "transcript_acknowledged",
            response_id=response_id,
            backend_id=backend_id,
            acknowledged_items=self._ack_length,
        )

    def reset_response_cursor(self) -> None:
        with self._lock:
            self._last_response_id = None
            self._last_backend_id = None
            self._ack_length = 0

    def prepare_request(
        self,
        backend_id: str,
        *,
        supports_previous_response: bool = True,
    ) -> PreparedRequest:
        """Build the item list for the next request to ``backend_id``.

        Stateful mode sends only the items appended since the last
        acknowledged response together with its id. The full transcript is
        sent instead when no response was acknowledged yet, when the target
        backend differs from the one that produced the acknowledged response,
        or when the backend cannot reference prior responses.
        """
        with self._lock:
            snapshot = tuple(self._items)
            response_id = self._last_response_id
            same_backend = self._last_backend_id == backend_id
            ack_length = self._ack_length

        if (
            self._mode is StorageMode.STATEFUL
            and supports_previous_response
            and response_id is not None
            and same_backend
        ):
            return PreparedRequest(items=snapshot[ack_length:], previous_response_id=response_id)
        return PreparedRequest(items=snapshot)

    def to_dicts(self) -> list[dict[str, Any]]:
        return [item.to_dict() for item in self.items()]

    @classmethod
    def from_dicts(
        cls,
        payloads: Sequence[Mapping[str, object]],
        *,
        mode: StorageMode | str = StorageMode.STATELESS,
        logger: Any | None = None,
    ) -> TranscriptStore:
        return cls(
            mode=mode,
            items=[item_from_dict(payload) for payload in payloads],
            logger=logger,
        )


__all__ = [
    "PreparedRequest",
    "StorageMode",
    "TranscriptError",
    "TranscriptStore",
]
