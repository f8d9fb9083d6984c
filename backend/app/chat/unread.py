"""Per-connection unread counters.

A connection's view has at most one open conversation. Every delivered
message written by someone else bumps exactly one bucket, unless that bucket
is the open conversation. Opening a conversation resets its bucket.

Buckets:
    - Pair messages: the peer's identity.
    - Room messages: ``room:<roomId>``.
"""
from typing import Dict, Optional

from .identity import normalize, room_key
from .schemas import StoredMessage


def bucket_for(message: StoredMessage, viewer: str) -> str:
    """The counter bucket a message lands in from ``viewer``'s point of view."""
    if message.is_room:
        return room_key(message.roomId)
    return message.receiver if message.sender == viewer else message.sender


class UnreadTracker:
    """Unread counts for one viewer identity."""

    def __init__(self, viewer: str) -> None:
        self.viewer = normalize(viewer)
        self.active: Optional[str] = None
        self._counts: Dict[str, int] = {}

    def record(self, message: StoredMessage) -> Optional[str]:
        """Account for a delivered message.

        Returns:
            The bucket that was incremented, or None if nothing changed
            (own message, or the conversation is open).
        """
        if message.sender == self.viewer:
            return None
        bucket = bucket_for(message, self.viewer)
        if bucket == self.active:
            return None
        self._counts[bucket] = self._counts.get(bucket, 0) + 1
        return bucket

    def open(self, bucket: str) -> None:
        """Make ``bucket`` the active conversation and clear its count."""
        self.active = bucket
        self._counts.pop(bucket, None)

    def close(self) -> None:
        self.active = None

    def count(self, bucket: str) -> int:
        return self._counts.get(bucket, 0)

    def snapshot(self) -> Dict[str, int]:
        return dict(self._counts)
