"""In-memory presence registry.

Maps channels to the live connections subscribed to them. A personal channel
(``user:<identity>``) holds every open connection of one identity; a room
channel (``room:<roomId>``) holds every connection that joined the room.

The registry owns its state exclusively. The lifecycle manager mutates it
through ``join``/``leave`` and the routing engine reads it through
``subscribers_of``. Both run on the same event loop, one turn at a time, so
no locking is needed. It is NOT safe to share across threads.

Offline is "no entry": a channel whose last connection leaves is removed.
"""
import logging
from typing import Dict, Hashable, Optional, Set

from .identity import PERSONAL_CHANNEL_PREFIX, normalize, personal_channel

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Channel -> connections mapping with reverse indexes for cleanup."""

    def __init__(self) -> None:
        # channel -> set of connection handles
        self._channels: Dict[str, Set[Hashable]] = {}

        # connection -> set of channels it joined (for leave-all on disconnect)
        self._memberships: Dict[Hashable, Set[str]] = {}

        # connection -> identity it joined as
        self._identities: Dict[Hashable, str] = {}

    def join(self, identity: str, connection: Hashable, channel: Optional[str] = None) -> None:
        """Subscribe ``connection`` to ``channel`` (default: the identity's personal channel).

        Idempotent: joining the same channel twice changes nothing.
        """
        identity = normalize(identity)
        if channel is None:
            channel = personal_channel(identity)

        self._identities[connection] = identity
        self._channels.setdefault(channel, set()).add(connection)
        self._memberships.setdefault(connection, set()).add(channel)
        logger.debug(f"[Presence] {identity} joined {channel}")

    def leave(self, connection: Hashable, channel: Optional[str] = None) -> Set[str]:
        """Unsubscribe a connection.

        Args:
            connection: The connection handle.
            channel: A single channel to leave. If None, leave every channel
                and forget the connection entirely (disconnect cleanup).

        Returns:
            The channels the connection was removed from.
        """
        joined = self._memberships.get(connection, set())
        targets = set(joined) if channel is None else joined & {channel}

        for name in targets:
            subscribers = self._channels.get(name)
            if subscribers is not None:
                subscribers.discard(connection)
                if not subscribers:
                    del self._channels[name]
            joined.discard(name)

        if channel is None:
            self._memberships.pop(connection, None)
            self._identities.pop(connection, None)
        elif not joined:
            self._memberships.pop(connection, None)

        return targets

    def subscribers_of(self, channel: str) -> Set[Hashable]:
        """Connections currently subscribed to ``channel``. Empty if none."""
        return set(self._channels.get(channel, ()))

    def channels_of(self, connection: Hashable) -> Set[str]:
        return set(self._memberships.get(connection, ()))

    def identity_of(self, connection: Hashable) -> Optional[str]:
        return self._identities.get(connection)

    def is_online(self, identity: str) -> bool:
        return bool(self._channels.get(personal_channel(identity)))

    def online_identities(self) -> Set[str]:
        """Identities with at least one open connection."""
        prefix_len = len(PERSONAL_CHANNEL_PREFIX)
        return {
            name[prefix_len:]
            for name, subscribers in self._channels.items()
            if name.startswith(PERSONAL_CHANNEL_PREFIX) and subscribers
        }

    def all_connections(self) -> Set[Hashable]:
        """Every connection that has joined as some identity."""
        return set(self._identities)

    def connection_count(self) -> int:
        return len(self._identities)
