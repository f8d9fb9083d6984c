"""Identity directory boundary.

Credential checks and the user directory live outside the chat core. The
core only consumes two calls, defined by ``IdentityDirectory``:

    - verify_credentials(identity, secret) -> AuthResult, or AuthError
    - list_identities() -> set of identities

``StaticIdentityDirectory`` is the implementation shipped with the service:
users and secrets come from ``parley.secrets.yaml`` (``directory.users``).
A deployment with a real user database plugs in another subclass.

Usage:
    directory = StaticIdentityDirectory({"Alice": "s3cret"})
    result = directory.verify_credentials("ALICE", "s3cret")  # identity "alice"
"""
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Set

from app.chat.errors import InvalidIdentity
from app.chat.identity import normalize

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Credentials were rejected."""


@dataclass
class AuthResult:
    """Outcome of a successful credential check.

    Attributes:
        ok: Always True (failures raise AuthError).
        identity: The normalized identity the credentials belong to.
    """
    ok: bool
    identity: str


class IdentityDirectory(ABC):
    """Abstract source of user identities and credential checks."""

    @abstractmethod
    def verify_credentials(self, identity: str, secret: str) -> AuthResult:
        """Check a secret for an identity.

        Raises:
            AuthError: Unknown identity or wrong secret.
        """

    @abstractmethod
    def list_identities(self) -> Set[str]:
        """All known identities, normalized."""


class StaticIdentityDirectory(IdentityDirectory):
    """Directory backed by a fixed username -> secret mapping."""

    def __init__(self, users: Dict[str, str]) -> None:
        self._secrets: Dict[str, str] = {}
        for name, secret in users.items():
            try:
                identity = normalize(name)
            except InvalidIdentity:
                logger.warning("Skipping blank username in directory config")
                continue
            if identity in self._secrets:
                logger.warning(f"Duplicate directory entry for {identity!r}; keeping the first")
                continue
            self._secrets[identity] = str(secret)

    def verify_credentials(self, identity: str, secret: str) -> AuthResult:
        try:
            identity = normalize(identity)
        except InvalidIdentity as e:
            raise AuthError("Invalid username/password") from e

        expected = self._secrets.get(identity)
        if expected is None or not isinstance(secret, str):
            raise AuthError("Invalid username/password")
        if not hmac.compare_digest(expected.encode(), secret.encode()):
            raise AuthError("Invalid username/password")
        return AuthResult(ok=True, identity=identity)

    def list_identities(self) -> Set[str]:
        return set(self._secrets)
