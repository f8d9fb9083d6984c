"""Routing engine: validate, persist, then fan out.

Outbound message pipeline:
    1. Validate  - normalize identities, require a body, resolve the
                   addressing variant (PairMessage / RoomMessage).
    2. Persist   - MessageStore.append. On failure nothing is broadcast and
                   StoreUnavailable propagates to the sender's connection.
    3. Resolve   - pair: receiver's and sender's personal channels;
                   room: the room channel.
    4. Fan out   - one ``receive_message`` per connection, even if the
                   connection sits in more than one resolved channel.

Typing indicators take a separate path: delivered to the peer's personal
channel only, never stored, silently dropped when nobody is listening.

Ordering:
    A per-conversation lock is held from persist through fan-out, so every
    recipient sees a conversation's messages in store order even when the
    sender has several tabs sending at once. Different conversations do not
    wait on each other.

Performance Notes:
    - Fan-out uses asyncio.gather() for concurrent delivery
    - A connection whose write fails is treated as dead and removed from the
      registry (its receive loop will observe the close and finish cleanup)
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, Set

from .errors import ValidationError
from .identity import personal_channel
from .presence import PresenceRegistry
from .schemas import StoredMessage, parse_message_id, parse_outbound, parse_typing
from .store import MessageStore

logger = logging.getLogger(__name__)


class RoutingEngine:
    """Routes chat traffic between connections in the presence registry.

    Args:
        store: Durable message store.
        registry: Presence registry used for fan-out.
        echo_to_sender: Also deliver pair messages to the sender's own
            personal channel, so the sender's other tabs see them.
    """

    def __init__(
        self,
        store: MessageStore,
        registry: PresenceRegistry,
        echo_to_sender: bool = True,
    ) -> None:
        self.store = store
        self.registry = registry
        self.echo_to_sender = echo_to_sender

        # conversation key -> lock, plus how many tasks hold or wait on it
        self._conversation_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _serialized(self, key: str):
        """Serialize persist+fan-out per conversation. Drops idle locks."""
        lock = self._conversation_locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._conversation_locks[key]

    # =========================================================================
    # Messages
    # =========================================================================

    async def send_message(self, data: Any, sender: str) -> StoredMessage:
        """Validate, persist, and fan out one outbound message.

        Args:
            data: Raw ``send_message`` payload.
            sender: The sending connection's joined identity.

        Returns:
            The stored message, as delivered.

        Raises:
            ValidationError: Bad payload (nothing stored, nothing sent).
            StoreUnavailable: Persist failed (nothing sent).
        """
        outbound = parse_outbound(data, sender)

        async with self._serialized(outbound.key):
            # A disconnect mid-flight must not abort the write
            stored = await asyncio.shield(self.store.append(outbound))
            channels = outbound.channels(self.echo_to_sender)
            delivered = await self._fan_out(
                channels, lambda conn: conn.deliver_message(stored)
            )

        logger.info(
            f"[Routing] Message {stored.id} from {stored.sender} "
            f"to {stored.roomId or stored.receiver}: delivered to {delivered} connection(s)"
        )
        return stored

    async def delete_message(self, data: Any, requester: str) -> StoredMessage:
        """Soft-delete a message and broadcast ``message_deleted``.

        Only the author may delete. Deleting an already deleted message
        broadcasts again but leaves it deleted.

        Raises:
            ValidationError: Missing id, or requester is not the author.
            NotFound: No such message.
            StoreUnavailable: Store read or write failed.
        """
        message_id = parse_message_id(data)
        existing = await self.store.get(message_id)
        if existing.sender != requester:
            raise ValidationError("Only the sender can delete this message")

        stored = await self.store.soft_delete(message_id)
        await self._fan_out(
            stored.channels(), lambda conn: conn.send("message_deleted", {"id": stored.id})
        )
        logger.info(f"[Routing] Message {stored.id} deleted by {requester}")
        return stored

    # =========================================================================
    # Typing indicators
    # =========================================================================

    async def typing(self, data: Any, sender: str, stopped: bool = False) -> int:
        """Relay a typing (or stop_typing) event to the peer only.

        Returns:
            Number of connections reached (0 is fine, not an error).
        """
        target = parse_typing(data, sender)
        event = "stop_typing" if stopped else "typing"
        return await self._fan_out(
            [personal_channel(target)],
            lambda conn: conn.send(event, {"from": sender, "to": target}),
        )

    # =========================================================================
    # Presence notifications
    # =========================================================================

    async def announce_presence(self, identity: str, online: bool) -> int:
        """Tell every other joined connection that ``identity`` came or went."""
        targets = {
            conn for conn in self.registry.all_connections()
            if self.registry.identity_of(conn) != identity
        }
        return await self._deliver(
            targets, lambda conn: conn.send("presence", {"identity": identity, "online": online})
        )

    # =========================================================================
    # Delivery
    # =========================================================================

    async def _fan_out(
        self, channels: Iterable[str], send: Callable[[Hashable], Awaitable[None]]
    ) -> int:
        """Deliver once to every subscriber of any of ``channels``."""
        targets: Set[Hashable] = set()
        for channel in channels:
            targets |= self.registry.subscribers_of(channel)
        return await self._deliver(targets, send)

    async def _deliver(
        self, targets: Set[Hashable], send: Callable[[Hashable], Awaitable[None]]
    ) -> int:
        if not targets:
            return 0

        connections = list(targets)
        results = await asyncio.gather(
            *[self._safe_send(conn, send) for conn in connections],
            return_exceptions=True,
        )

        failed = [conn for conn, ok in zip(connections, results) if ok is not True]
        for conn in failed:
            self.registry.leave(conn)
            logger.debug(f"[Routing] Removed dead connection {conn!r}")
        return len(connections) - len(failed)

    async def _safe_send(self, conn: Hashable, send: Callable[[Hashable], Awaitable[None]]) -> bool:
        try:
            await send(conn)
            return True
        except Exception as e:
            logger.debug(f"[Routing] Failed to send to {conn!r}: {e}")
            return False
