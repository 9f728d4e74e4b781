"""
Credential verification.

Tokens are issued by the external auth service; this module only verifies
them (HS256 JWT) and turns the claims into an Identity. Routers depend on
get_current_identity / require_owner; the WebSocket endpoint calls
CredentialVerifier.verify directly.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from config.settings import settings
from .errors import ForbiddenError, UnauthorizedError

logger = logging.getLogger(__name__)

ROLE_USER = "user"
ROLE_OWNER = "owner"

# auto_error=False so a missing token reaches our own 401 envelope
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Identity:
    subscriber_id: str
    role: str = ROLE_USER
    name: Optional[str] = None

    @property
    def is_owner(self) -> bool:
        return self.role == ROLE_OWNER


class CredentialVerifier:
    def __init__(self, secret: str, algorithm: str = "HS256"):
        self._secret = secret
        self._algorithm = algorithm

    def verify(self, token: Optional[str]) -> Identity:
        if not token:
            raise UnauthorizedError("Missing Authorization token")
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError:
            logger.warning("Token expired")
            raise UnauthorizedError("Token expired")
        except jwt.InvalidTokenError as e:
            logger.warning("Token decode error: %s", e)
            raise UnauthorizedError("Invalid token")

        subject = payload.get("sub")
        if not subject:
            raise UnauthorizedError("Invalid token")
        return Identity(subscriber_id=str(subject), role=payload.get("role", ROLE_USER), name=payload.get("name"))


def _extract_token(header_val: Optional[str]) -> Optional[str]:
    """Strip 'Bearer ' prefix if present."""
    if not header_val:
        return None
    hv = header_val.strip()
    if hv.lower().startswith("bearer "):
        return hv.split(None, 1)[1].strip()
    return hv


def get_verifier() -> CredentialVerifier:
    return CredentialVerifier(settings.JWT_SECRET, settings.JWT_ALGORITHM)


async def get_current_identity(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(security),
    verifier: CredentialVerifier = Depends(get_verifier),
) -> Identity:
    token_value = creds.credentials if creds and creds.credentials else None
    if not token_value:
        token_value = _extract_token(request.query_params.get("token"))
    identity = verifier.verify(token_value)
    request.state.identity = identity
    return identity


async def require_owner(identity: Identity = Depends(get_current_identity)) -> Identity:
    if not identity.is_owner:
        raise ForbiddenError("Owner role required")
    return identity


def ensure_can_view(identity: Identity, subscriber_id: Optional[str]) -> None:
    """Subscribers may only read their own records; owners read everything."""
    if identity.is_owner:
        return
    if subscriber_id != identity.subscriber_id:
        raise ForbiddenError("Not allowed to access another subscriber's records")
