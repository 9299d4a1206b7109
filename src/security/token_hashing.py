from __future__ import annotations

import hashlib
import hmac
import secrets
from functools import lru_cache

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from src.config import get_settings

HMAC_PREFIX_LENGTH = 8


@lru_cache(maxsize=1)
def get_password_hasher() -> PasswordHasher:
    """Argon2id hasher shared by password storage and one-time tokens."""
    settings = get_settings()
    return PasswordHasher(
        time_cost=settings.argon2_time_cost,
        memory_cost=settings.argon2_memory_cost,
        parallelism=settings.argon2_parallelism,
        type=Type.ID,
    )


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def hash_token(token: str, hasher: PasswordHasher | None = None) -> str:
    return (hasher or get_password_hasher()).hash(token)


def verify_token_hash(token: str, token_hash: str, hasher: PasswordHasher | None = None) -> bool:
    try:
        return (hasher or get_password_hasher()).verify(token_hash, token)
    except (VerificationError, InvalidHashError):
        return False


def hmac_prefix(secret: str, token: str, length: int = HMAC_PREFIX_LENGTH) -> str:
    """Leading hex characters of HMAC-SHA256(secret, token), used to narrow hash lookups."""
    digest = hmac.new(secret.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()
    return digest[:length]
