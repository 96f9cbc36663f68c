"""Prefixed ULID identifiers for transcript items, turns, and sessions."""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_PREFIX_SEPARATOR: Final[str] = "_"

SESSION_ID_PREFIX: Final[str] = "sess"
TURN_ID_PREFIX: Final[str] = "turn"
MESSAGE_ID_PREFIX: Final[str] = "msg"
CALL_ITEM_ID_PREFIX: Final[str] = "fc"
OUTPUT_ITEM_ID_PREFIX: Final[str] = "fco"
REASONING_ID_PREFIX: Final[str] = "rs"

_DECODE_TABLE: Final[dict[str, int]] = {
    char: index for index, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}

_RandBytes = Callable[[int], bytes]


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate a ULID as a 26-character uppercase Crockford Base32 string."""
    ts_ms = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= ts_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(
            f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}, got {ts_ms}"
        )
    provider = secrets.token_bytes if randbytes is None else randbytes
    random_bytes = bytes(provider(ULID_RANDOM_BYTES))
    if len(random_bytes) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")
    value = (ts_ms << 80) | int.from_bytes(random_bytes, "big")

    chars = ["0"] * ULID_LENGTH
    for index in range(ULID_LENGTH - 1, -1, -1):
        chars[index] = CROCKFORD_BASE32_ALPHABET[value & 0b11111]
        value >>= 5
    return "".join(chars)


def generate_prefixed_id(
    prefix: str,
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate ``<prefix>_<ulid>``; the prefix names the entity kind."""
    if not isinstance(prefix, str) or not prefix:
        raise ValueError("prefix must be a non-empty string")
    if _PREFIX_SEPARATOR in prefix:
        raise ValueError(f"prefix must not contain '{_PREFIX_SEPARATOR}'")
    ulid = generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)
    return f"{prefix}{_PREFIX_SEPARATOR}{ulid}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    """Raise ``ValueError`` unless ``id_str`` is ``<expected_prefix>_<ulid>``."""
    if not isinstance(id_str, str):
        raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")
    lead = f"{expected_prefix}{_PREFIX_SEPARATOR}"
    if not id_str.startswith(lead):
        raise ValueError(f"expected prefix '{lead}'")
    ulid_part = id_str[len(lead) :]
    if len(ulid_part) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(ulid_part)}")
    for index, char in enumerate(ulid_part):
        if char.upper() not in _DECODE_TABLE:
            raise ValueError(f"invalid ULID character {char!r} at index {index}")


def new_session_id() -> str:
    return generate_prefixed_id(SESSION_ID_PREFIX)


def new_turn_id() -> str:
    return generate_prefixed_id(TURN_ID_PREFIX)


def new_message_id() -> str:
    return generate_prefixed_id(MESSAGE_ID_PREFIX)


def new_call_item_id() -> str:
    return generate_prefixed_id(CALL_ITEM_ID_PREFIX)


def new_output_item_id() -> str:
    return generate_prefixed_id(OUTPUT_ITEM_ID_PREFIX)


def new_reasoning_id() -> str:
    return generate_prefixed_id(REASONING_ID_PREFIX)


__all__ = [
    "CALL_ITEM_ID_PREFIX",
    "MESSAGE_ID_PREFIX",
    "OUTPUT_ITEM_ID_PREFIX",
    "REASONING_ID_PREFIX",
    "SESSION_ID_PREFIX",
    "TURN_ID_PREFIX",
    "ULID_LENGTH",
    "generate_prefixed_id",
    "generate_ulid",
    "new_call_item_id",
    "new_message_id",
    "new_output_item_id",
    "new_reasoning_id",
    "new_session_id",
    "new_turn_id",
    "validate_prefixed_id",
]
