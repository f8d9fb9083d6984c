"""Error taxonomy for the chat core.

Every error here is recoverable: the WebSocket loop reports it to the
originating connection only, and the HTTP routers map it to a status code.
None of them closes a connection or affects other connections.

Codes (sent to clients in ``error`` frames):
    - validation_error: Bad input, never persisted or broadcast.
    - invalid_identity: Empty or non-string handle.
    - store_unavailable: Persistence layer down. Safe to retry the same send.
    - not_found: Delete or lookup of a message that does not exist.
    - not_joined: Action attempted before ``join``.
"""


class ChatError(Exception):
    """Base class for recoverable chat errors."""

    code = "chat_error"
    retryable = False
    status_code = 400

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        """Convert to the ``error`` frame payload."""
        return {
            "code": self.code,
            "error": self.message,
            "retryable": self.retryable,
        }


class ValidationError(ChatError):
    """Malformed or incomplete client input."""

    code = "validation_error"


class InvalidIdentity(ValidationError):
    """A handle that is empty after trimming, or not a string at all."""

    code = "invalid_identity"


class StoreUnavailable(ChatError):
    """The message store could not complete a read or write."""

    code = "store_unavailable"
    retryable = True
    status_code = 503


class NotFound(ChatError):
    code = "not_found"
    status_code = 404


class NotJoined(ChatError):
    """The connection has not registered an identity yet."""

    code = "not_joined"
    status_code = 409
