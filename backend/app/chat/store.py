"""DuckDB-backed durable message store.

Append-only record of chat messages with a one-way soft-delete flag. Rows are
never removed or edited except for ``deleted`` going from FALSE to TRUE.

Database Schema:
    messages table:
        - seq: Insertion sequence (tie-breaker for equal timestamps)
        - id: UUID assigned at append time
        - sender: Normalized identity of the author
        - receiver: Recipient identity (pair mode) or NULL
        - room_id: Room identifier (room mode) or NULL
        - body: Message text
        - created_at: Server timestamp, seconds since epoch, never decreasing
        - deleted: Soft-delete marker

Ordering:
    Every listing is ascending by (created_at, seq). ``created_at`` is clamped
    so that it never goes backwards even if the wall clock does.

Concurrency:
    DuckDB calls are blocking, so the async API runs them in a worker thread
    via ``asyncio.to_thread``. A lock serializes access to the single
    connection, which is not thread-safe.

Usage:
    store = MessageStore(db_path=":memory:")
    stored = await store.append(PairMessage(sender="alice", receiver="bob", body="hi"))
    history = await store.list_conversation("bob", "alice")
"""
import asyncio
import logging
import threading
import time
import uuid
from typing import Callable, List, Optional

import duckdb

from .errors import NotFound, StoreUnavailable, ValidationError
from .identity import normalize, normalize_room
from .schemas import OutboundMessage, PairMessage, RoomMessage, StoredMessage

logger = logging.getLogger(__name__)

_COLUMNS = "id, sender, receiver, room_id, body, created_at, deleted"


class MessageStore:
    """Durable message storage in DuckDB.

    One instance per process, created in the app lifespan and passed to the
    routing engine and the HTTP routers.

    Attributes:
        _db_path: Path to the DuckDB database file.
    """

    _db_path: str = "messages.duckdb"

    def __init__(
        self,
        db_path: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Open the database and create the schema if needed.

        Args:
            db_path: Path to DuckDB file. Defaults to "messages.duckdb".
                Use ":memory:" for a throwaway store.
            clock: Source of wall-clock seconds for createdAt.
        """
        if db_path:
            self._db_path = db_path
        self._clock = clock
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.Lock()
        self._closed = False
        self._last_created_at = 0.0
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._closed:
            raise StoreUnavailable("Message store is closed")
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self._db_path)
            except duckdb.Error as e:
                raise StoreUnavailable(f"Cannot open message store: {e}") from e
        return self._connection

    def _initialize_db(self) -> None:
        """Create the sequence and table. Safe to call repeatedly."""
        conn = self._get_connection()
        conn.execute("CREATE SEQUENCE IF NOT EXISTS messages_seq START 1;")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                seq BIGINT DEFAULT nextval('messages_seq') PRIMARY KEY,
                id VARCHAR NOT NULL UNIQUE,
                sender VARCHAR NOT NULL,
                receiver VARCHAR,
                room_id VARCHAR,
                body VARCHAR NOT NULL,
                created_at DOUBLE NOT NULL,
                deleted BOOLEAN NOT NULL DEFAULT FALSE
            )
        """)
        row = conn.execute("SELECT MAX(created_at) FROM messages").fetchone()
        if row and row[0] is not None:
            self._last_created_at = float(row[0])

    def _run(self, fn, *args):
        """Run ``fn`` under the connection lock, mapping DuckDB errors."""
        with self._lock:
            try:
                return fn(self._get_connection(), *args)
            except duckdb.Error as e:
                logger.error(f"[Store] Database error: {e}")
                raise StoreUnavailable(f"Message store unavailable: {e}") from e

    # =========================================================================
    # Writes
    # =========================================================================

    async def append(self, message: OutboundMessage) -> StoredMessage:
        """Persist a message and return it with its id and timestamp.

        Args:
            message: A PairMessage or RoomMessage.

        Returns:
            The StoredMessage as written.

        Raises:
            ValidationError: Blank body or incomplete addressing.
            StoreUnavailable: The write did not complete.
        """
        message = self._validate(message)
        return await asyncio.to_thread(self._run, self._append, message)

    @staticmethod
    def _validate(message: OutboundMessage) -> OutboundMessage:
        if not isinstance(message, (PairMessage, RoomMessage)):
            raise ValidationError("Unsupported message type")
        if not message.body or not message.body.strip():
            raise ValidationError("body is required")
        sender = normalize(message.sender)
        if isinstance(message, PairMessage):
            return PairMessage(sender=sender, receiver=normalize(message.receiver), body=message.body)
        return RoomMessage(sender=sender, roomId=normalize_room(message.roomId), body=message.body)

    def _append(self, conn: duckdb.DuckDBPyConnection, message: OutboundMessage) -> StoredMessage:
        # Runs under self._lock, so the clamp and the insert are atomic.
        created_at = max(self._clock(), self._last_created_at)
        stored = StoredMessage(
            id=str(uuid.uuid4()),
            sender=message.sender,
            receiver=message.receiver if isinstance(message, PairMessage) else None,
            roomId=message.roomId if isinstance(message, RoomMessage) else None,
            body=message.body,
            createdAt=created_at,
        )
        conn.execute(
            """
            INSERT INTO messages (id, sender, receiver, room_id, body, created_at, deleted)
            VALUES (?, ?, ?, ?, ?, ?, FALSE)
            """,
            [stored.id, stored.sender, stored.receiver, stored.roomId, stored.body, created_at],
        )
        self._last_created_at = created_at
        return stored

    async def soft_delete(self, message_id: str) -> StoredMessage:
        """Mark a message deleted. Deleting twice is a no-op.

        Raises:
            NotFound: No message with this id.
            StoreUnavailable: The update did not complete.
        """
        return await asyncio.to_thread(self._run, self._soft_delete, message_id)

    def _soft_delete(self, conn: duckdb.DuckDBPyConnection, message_id: str) -> StoredMessage:
        existing = self._get(conn, message_id)
        if not existing.deleted:
            conn.execute("UPDATE messages SET deleted = TRUE WHERE id = ?", [message_id])
            existing.deleted = True
        return existing

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, message_id: str) -> StoredMessage:
        """Fetch one message by id.

        Raises:
            NotFound: No message with this id.
        """
        return await asyncio.to_thread(self._run, self._get, message_id)

    def _get(self, conn: duckdb.DuckDBPyConnection, message_id: str) -> StoredMessage:
        row = conn.execute(
            f"SELECT {_COLUMNS} FROM messages WHERE id = ?", [message_id]
        ).fetchone()
        if row is None:
            raise NotFound(f"Message {message_id} not found")
        return self._row_to_message(row)

    async def list_conversation(
        self,
        a: str,
        b: str,
        since: Optional[float] = None,
        before: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[StoredMessage]:
        """List a 1-1 conversation, oldest first.

        Symmetric: ``list_conversation(a, b) == list_conversation(b, a)``.

        Args:
            a: One participant (any case).
            b: The other participant (any case).
            since: Only messages with createdAt > since (reconnect recovery).
            before: Only messages with createdAt < before (paging cursor).
            limit: Keep only the newest ``limit`` matches.
        """
        a, b = normalize(a), normalize(b)
        where = "((sender = ? AND receiver = ?) OR (sender = ? AND receiver = ?))"
        return await asyncio.to_thread(
            self._run, self._list, where, [a, b, b, a], since, before, limit
        )

    async def list_room(
        self,
        room_id: str,
        since: Optional[float] = None,
        before: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[StoredMessage]:
        """List a room's messages, oldest first. Same filters as list_conversation."""
        room_id = normalize_room(room_id)
        return await asyncio.to_thread(
            self._run, self._list, "room_id = ?", [room_id], since, before, limit
        )

    def _list(
        self,
        conn: duckdb.DuckDBPyConnection,
        where: str,
        params: list,
        since: Optional[float],
        before: Optional[float],
        limit: Optional[int],
    ) -> List[StoredMessage]:
        params = list(params)
        if since is not None:
            where += " AND created_at > ?"
            params.append(since)
        if before is not None:
            where += " AND created_at < ?"
            params.append(before)

        if limit is None:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM messages WHERE {where} ORDER BY created_at, seq",
                params,
            ).fetchall()
        else:
            # Newest `limit` rows, flipped back to ascending order
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM messages WHERE {where} "
                f"ORDER BY created_at DESC, seq DESC LIMIT ?",
                params + [max(limit, 0)],
            ).fetchall()
            rows.reverse()
        return [self._row_to_message(row) for row in rows]

    @staticmethod
    def _row_to_message(row) -> StoredMessage:
        return StoredMessage(
            id=row[0],
            sender=row[1],
            receiver=row[2],
            roomId=row[3],
            body=row[4],
            createdAt=row[5],
            deleted=bool(row[6]),
        )

    def close(self) -> None:
        """Close the database connection. Later calls raise StoreUnavailable."""
        with self._lock:
            self._closed = True
            if self._connection is not None:
                self._connection.close()
                self._connection = None
