"""Pydantic schemas for chat messages and WebSocket frames.

Outbound messages come in two addressing modes that share one wire shape:

    - Pair mode: ``{sender, receiver, body}`` for a 1-1 conversation.
    - Room mode: ``{sender, roomId, body}`` for a multi-party room.

``parse_outbound`` resolves the raw payload into exactly one of
``PairMessage`` or ``RoomMessage`` at the validation step; everything
downstream (store, routing, unread counters) works on the resolved variant.

These schemas are used by:
    - MessageStore: append input and StoredMessage rows
    - RoutingEngine: validation and fan-out payloads
    - Chat router: HTTP history responses and WebSocket frames
"""
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .identity import (
    conversation_key,
    normalize,
    normalize_room,
    personal_channel,
    room_channel,
    room_key,
)


class PairMessage(BaseModel):
    """A validated 1-1 message ready to persist.

    Attributes:
        sender: Normalized identity of the author.
        receiver: Normalized identity of the recipient.
        body: Message text (non-empty after trim).
    """
    kind: Literal["pair"] = "pair"
    sender: str
    receiver: str
    body: str

    @property
    def key(self) -> str:
        return conversation_key(self.sender, self.receiver)

    def channels(self, echo_to_sender: bool = True) -> list:
        """Channels that receive this message, receiver first."""
        channels = [personal_channel(self.receiver)]
        if echo_to_sender and self.sender != self.receiver:
            channels.append(personal_channel(self.sender))
        return channels


class RoomMessage(BaseModel):
    """A validated room message ready to persist.

    Attributes:
        sender: Normalized identity of the author.
        roomId: Room identifier (case-sensitive, trimmed).
        body: Message text (non-empty after trim).
    """
    kind: Literal["room"] = "room"
    sender: str
    roomId: str
    body: str

    @property
    def key(self) -> str:
        return room_key(self.roomId)

    def channels(self, echo_to_sender: bool = True) -> list:
        return [room_channel(self.roomId)]


OutboundMessage = Union[PairMessage, RoomMessage]


class StoredMessage(BaseModel):
    """A persisted message, as returned by the store and broadcast to clients.

    Exactly one of ``receiver`` / ``roomId`` is set.

    Attributes:
        id: Unique message ID assigned by the store.
        sender: Normalized identity of the author.
        receiver: Recipient identity (pair mode only).
        roomId: Room identifier (room mode only).
        body: Message text. Blanked on the wire once deleted.
        createdAt: Server-assigned timestamp (seconds since epoch).
        deleted: Soft-delete marker. Never reverts to False.
    """
    id: str = Field(..., description="Unique message ID")
    sender: str = Field(..., description="Identity of the sender")
    receiver: Optional[str] = Field(default=None, description="Recipient identity (pair mode)")
    roomId: Optional[str] = Field(default=None, description="Room ID (room mode)")
    body: str = Field(..., description="Message text")
    createdAt: float = Field(..., description="Timestamp in seconds since epoch")
    deleted: bool = Field(default=False, description="Soft-delete marker")

    @property
    def is_room(self) -> bool:
        return self.roomId is not None

    def channels(self) -> list:
        """Every channel that saw this message (sender's included)."""
        if self.is_room:
            return [room_channel(self.roomId)]
        return sorted({personal_channel(self.receiver), personal_channel(self.sender)})

    def to_wire(self) -> dict:
        """Serialize for clients. Deleted messages never expose their text."""
        data = self.model_dump()
        if self.deleted:
            data["body"] = ""
        return data


class SendMessagePayload(BaseModel):
    """Raw ``send_message`` payload as sent by clients."""
    sender: Optional[str] = None
    receiver: Optional[str] = None
    roomId: Optional[str] = None
    body: Optional[str] = None


class TypingPayload(BaseModel):
    """Raw ``typing`` / ``stop_typing`` payload. ``from`` is a keyword, hence the alias."""
    from_: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None


class ClientFrame(BaseModel):
    """A single client -> server WebSocket frame."""
    event: str = Field(..., min_length=1)
    data: Any = None
    ref: Optional[str] = None


def _load(model, data: Any):
    if not isinstance(data, dict):
        raise ValidationError("Payload must be an object")
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid payload: {e.errors()[0].get('msg', 'bad field')}")


def parse_outbound(data: Any, joined_identity: str) -> OutboundMessage:
    """Validate a ``send_message`` payload into its addressing variant.

    The sender is the connection's joined identity. A ``sender`` field in the
    payload is accepted only if it normalizes to that identity.

    Raises:
        ValidationError: Missing/blank body, both or neither of receiver and
            roomId, or a sender that does not match the joined identity.
        InvalidIdentity: Blank receiver or roomId.
    """
    payload = _load(SendMessagePayload, data)

    sender = joined_identity
    if payload.sender is not None and normalize(payload.sender) != joined_identity:
        raise ValidationError("sender does not match the joined identity")

    if payload.body is None or not payload.body.strip():
        raise ValidationError("body is required")

    has_receiver = payload.receiver is not None
    has_room = payload.roomId is not None
    if has_receiver == has_room:
        raise ValidationError("Exactly one of receiver or roomId is required")

    if has_room:
        return RoomMessage(sender=sender, roomId=normalize_room(payload.roomId), body=payload.body)
    return PairMessage(sender=sender, receiver=normalize(payload.receiver), body=payload.body)


def parse_typing(data: Any, joined_identity: str) -> str:
    """Validate a typing payload and return the normalized target identity."""
    payload = _load(TypingPayload, data)
    if payload.from_ is not None and normalize(payload.from_) != joined_identity:
        raise ValidationError("from does not match the joined identity")
    if payload.to is None:
        raise ValidationError("to is required")
    return normalize(payload.to)


def parse_message_id(data: Any) -> str:
    """Accept ``"<id>"`` or ``{"id": "<id>"}``."""
    if isinstance(data, dict):
        data = data.get("id")
    if not isinstance(data, str) or not data.strip():
        raise ValidationError("Message id is required")
    return data.strip()
