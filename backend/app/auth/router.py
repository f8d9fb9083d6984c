"""Auth and directory endpoints.

Endpoints:
    POST /auth/login  - Verify credentials, return the normalized identity
    GET  /users       - Peer discovery: every known identity with online flag

Token issuance is not handled here; clients use the returned identity to
``join`` over the WebSocket.
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from app.chat.errors import InvalidIdentity
from app.chat.identity import normalize
from app.chat.presence import PresenceRegistry
from app.deps import get_directory, get_registry

from .service import AuthError, IdentityDirectory

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


class LoginRequest(BaseModel):
    """Request body for login."""
    username: str = Field(..., description="Display name (any case)")
    password: str = Field(..., description="Secret checked by the directory")


class LoginResponse(BaseModel):
    username: str = Field(..., description="Normalized identity")


class DirectoryEntry(BaseModel):
    username: str
    online: bool = False


@router.post("/auth/login", response_model=LoginResponse)
async def login(
    request: LoginRequest,
    directory: IdentityDirectory = Depends(get_directory),
) -> LoginResponse:
    """Check credentials against the identity directory.

    Returns:
        LoginResponse with the identity to use for ``join``.

    Raises:
        HTTPException: 401 when the directory rejects the credentials.
    """
    try:
        result = directory.verify_credentials(request.username, request.password)
    except AuthError as e:
        logger.info(f"Login rejected for {request.username!r}")
        raise HTTPException(status_code=401, detail=str(e))
    logger.info(f"Login ok for {result.identity}")
    return LoginResponse(username=result.identity)


@router.get("/users", response_model=List[DirectoryEntry])
async def list_users(
    directory: IdentityDirectory = Depends(get_directory),
    registry: PresenceRegistry = Depends(get_registry),
) -> List[DirectoryEntry]:
    """List every known identity, sorted, with its current presence.

    Directory entries are normalized again here, so a directory that hands
    back mixed-case names still lists each identity once.
    """
    identities = set()
    for name in directory.list_identities():
        try:
            identities.add(normalize(name))
        except InvalidIdentity:
            continue
    return [
        DirectoryEntry(username=identity, online=registry.is_online(identity))
        for identity in sorted(identities)
    ]
