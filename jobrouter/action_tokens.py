"""
Action tokens - single-purpose bearer secrets.

A token lets whoever holds it perform one kind of action on one job (accept
an offer, report completion, review the work). Only the SHA-256 digest is
stored; the raw secret leaves the system once, in the outgoing link.
"""

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .utils.time import utcnow

# Offer tokens are 24 random bytes, hex encoded
OFFER_TOKEN_BYTES = 24
ACTION_TOKEN_BYTES = 32


@dataclass(frozen=True)
class ActionCapability:
    """A freshly issued token; ``secret`` is never persisted"""

    scope: str
    job_id: str
    secret: str
    issued_at: datetime
    expires_at: Optional[datetime] = None
    single_use: bool = False

    @property
    def token_hash(self) -> str:
        return hash_action_token(self.secret)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > self.expires_at


def generate_action_token(nbytes: int = ACTION_TOKEN_BYTES) -> str:
    return secrets.token_hex(nbytes)


def hash_action_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def verify_action_token(
    raw_token: Optional[str],
    stored_hash: Optional[str],
    expires_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Constant-time check of a presented token against its stored digest"""
    if not raw_token or not stored_hash:
        return False
    if expires_at is not None and (now or utcnow()) > expires_at:
        return False
    return hmac.compare_digest(hash_action_token(raw_token), stored_hash)


def issue_capability(
    scope: str,
    job_id: str,
    ttl: Optional[timedelta] = None,
    single_use: bool = False,
    nbytes: int = ACTION_TOKEN_BYTES,
    now: Optional[datetime] = None,
) -> ActionCapability:
    issued_at = now or utcnow()
    return ActionCapability(
        scope=scope,
        job_id=job_id,
        secret=generate_action_token(nbytes),
        issued_at=issued_at,
        expires_at=issued_at + ttl if ttl else None,
        single_use=single_use,
    )
