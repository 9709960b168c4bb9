import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from jose import jwt as jose_jwt

from .config import JWT_ALGORITHM, SECRET_KEY

logger = logging.getLogger(__name__)

security = HTTPBearer()


class Role(str, Enum):
    ADMIN = "ADMIN"
    ROUTER = "ROUTER"
    CONTRACTOR = "CONTRACTOR"
    POSTER = "POSTER"


@dataclass(frozen=True)
class Actor:
    """The authenticated caller of a request"""

    user_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def create_access_token(user_id: str, role: str, expires_delta: Optional[timedelta] = None) -> str:
    """Issue a bearer token; sessions are issued elsewhere, this serves tooling and tests"""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=15))
    payload: dict[str, Any] = {"sub": user_id, "role": role, "exp": expire}
    return jose_jwt.encode(payload, SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[Actor]:
    try:
        payload = jose_jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        return None

    user_id = payload.get("sub")
    try:
        role = Role(str(payload.get("role", "")).upper())
    except ValueError:
        logger.warning(f"JWT for {user_id} carries unknown role {payload.get('role')!r}")
        return None
    if not user_id:
        return None
    return Actor(user_id=user_id, role=role)


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    actor = decode_access_token(credentials.credentials)
    if actor is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return actor


def require_roles(*roles: Role):
    """Dependency factory: the caller must hold one of ``roles``"""

    async def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in roles:
            logger.warning(f"⚠️ {actor.role.value} {actor.user_id} denied; requires {[r.value for r in roles]}")
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return actor

    return dependency
