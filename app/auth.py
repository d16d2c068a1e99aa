"""
Authentication adapter

Tokens are issued elsewhere; this module only verifies HS256 JWTs signed with
SECRET_KEY and exposes the caller as an Actor (claims: sub, role).
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from jose import jwt as jose_jwt

from .config import JWT_ALGORITHM, SECRET_KEY

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

CUSTOMER = "customer"
PROFESSIONAL = "professional"
ADMIN = "admin"
ROLES = (CUSTOMER, PROFESSIONAL, ADMIN)


@dataclass(frozen=True)
class Actor:
    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN


def create_jwt_token(
    subject: str, role: str, expires_delta: Optional[timedelta] = None, extra: Optional[dict] = None
) -> str:
    """
    Create a JWT token (used by tests and local tooling)

    Args:
        subject: User id placed in the sub claim
        role: customer, professional or admin
        expires_delta: Token expiration time (default 60 minutes)
    """
    to_encode: dict[str, Any] = dict(extra or {})
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=60))
    to_encode.update({"sub": str(subject), "role": role, "exp": expire})
    return jose_jwt.encode(to_encode, SECRET_KEY, algorithm=JWT_ALGORITHM)


def verify_jwt_token(token: str) -> Optional[dict[str, Any]]:
    """
    Verify and decode a JWT token

    Returns:
        Decoded payload if valid, None if invalid or expired
    """
    try:
        return jose_jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        return None


async def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Actor:
    """Get the calling user from the Bearer token"""
    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated. Please provide a valid Bearer token in the Authorization header.",
        )

    payload = verify_jwt_token(credentials.credentials)
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    subject = payload.get("sub")
    role = payload.get("role")
    if not subject or role not in ROLES:
        logger.error(f"❌ Token missing claims. Available claims: {list(payload.keys())}")
        raise HTTPException(status_code=401, detail="Invalid token claims")

    return Actor(id=str(subject), role=role)


def require_role(*roles: str):
    """Dependency factory restricting an endpoint to the given roles (admins always pass)"""

    async def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in roles and not actor.is_admin:
            logger.warning(f"⚠️ {actor.role} {actor.id} denied, requires {roles}")
            raise HTTPException(status_code=403, detail="Not allowed for this role")
        return actor

    return dependency


require_customer = require_role(CUSTOMER)
require_professional = require_role(PROFESSIONAL)
require_admin = require_role(ADMIN)
