"""Identity normalization and channel naming.

An identity is the canonical routing address of a user: the display name
trimmed and lowercased. Every boundary that accepts a handle (login,
directory listing, join, send, typing, history fetch) goes through
``normalize`` so that ``Alice`` and ``alice`` always land on the same channel
and the same stored conversation.
"""
from typing import Any

from .errors import InvalidIdentity

PERSONAL_CHANNEL_PREFIX = "user:"
ROOM_CHANNEL_PREFIX = "room:"


def normalize(raw: Any) -> str:
    """Canonicalize a user-supplied handle.

    Raises:
        InvalidIdentity: If ``raw`` is not a string or is blank.
    """
    if not isinstance(raw, str):
        raise InvalidIdentity("Identity must be a string")
    identity = raw.strip().lower()
    if not identity:
        raise InvalidIdentity("Identity must not be empty")
    return identity


def normalize_room(raw: Any) -> str:
    """Trim a room identifier. Room ids are case-sensitive."""
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidIdentity("roomId must be a non-empty string")
    return raw.strip()


def conversation_key(a: str, b: str) -> str:
    """Order-independent key for a 1-1 conversation."""
    first, second = sorted((normalize(a), normalize(b)))
    return f"{first}:{second}"


def room_key(room_id: str) -> str:
    return f"{ROOM_CHANNEL_PREFIX}{normalize_room(room_id)}"


def personal_channel(identity: str) -> str:
    return f"{PERSONAL_CHANNEL_PREFIX}{normalize(identity)}"


def room_channel(room_id: str) -> str:
    return room_key(room_id)
