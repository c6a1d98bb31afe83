"""
Bearer-token identity and role checks.

Tokens are issued by the auth service; here they are only verified. The
resolved identity is trusted for the rest of the request.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

import jwt
from fastapi import Depends, Header

from service_config import JWT_ALGORITHM, JWT_SECRET
from service_errors import Forbidden, Unauthenticated
from service_logging import log_json

ADMIN = 'admin'
VENDOR = 'vendor'
CONSUMER = 'consumer'


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str
    email: Optional[str] = None
    # Raw header, forwarded to collaborators that authorize on their own
    authorization: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN


def has_role(identity: Identity, allowed: Iterable[str]) -> bool:
    """Admin is a superset of every role."""
    return identity.is_admin or identity.role in set(allowed)


def is_owner_or_admin(identity: Identity, owner_id: Optional[str]) -> bool:
    return identity.is_admin or (owner_id is not None and identity.user_id == owner_id)


def decode_token(token: str, secret: str = JWT_SECRET, algorithm: str = JWT_ALGORITHM) -> dict:
    try:
        return jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.PyJWTError as e:
        log_json("WARN", "JWT verification failed", reason=str(e))
        raise Unauthenticated(str(e))


def get_identity(authorization: Optional[str] = Header(default=None)) -> Identity:
    token = (authorization or '').strip()
    if token.lower().startswith('bearer '):
        token = token[7:].strip()
    if not token:
        raise Unauthenticated('Authentication required')

    payload = decode_token(token)
    user_id = payload.get('sub') or payload.get('userId')
    if not user_id or not payload.get('role'):
        raise Unauthenticated('Token is missing subject or role')

    return Identity(user_id=str(user_id), role=payload['role'],
                    email=payload.get('email'), authorization=authorization)


def require_role(*allowed: str):
    def dependency(identity: Identity = Depends(get_identity)) -> Identity:
        if not has_role(identity, allowed):
            raise Forbidden('Insufficient permissions', role=identity.role)
        return identity
    return dependency
