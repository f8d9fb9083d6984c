"""Authentication boundary (credential checks and the user directory).

Services:
    - IdentityDirectory: Abstract collaborator consumed by the chat core.
    - StaticIdentityDirectory: Directory configured from parley.secrets.yaml.
"""
from .service import AuthError, AuthResult, IdentityDirectory, StaticIdentityDirectory

__all__ = [
    "AuthError",
    "AuthResult",
    "IdentityDirectory",
    "StaticIdentityDirectory",
]
