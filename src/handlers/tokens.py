from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.db.queries import find_users_by_hmac_prefix
from src.models.user import TokenKind, User
from src.security.token_hashing import generate_token, hash_token, hmac_prefix, verify_token_hash

logger = logging.getLogger(__name__)


def _expiry_minutes(kind: TokenKind) -> int:
    settings = get_settings()
    if kind is TokenKind.EMAIL_VERIFICATION:
        return settings.email_verification_token_expiry_minutes
    return settings.password_reset_token_expiry_minutes


async def issue_token(
    session: AsyncSession,
    *,
    user: User,
    kind: TokenKind,
    hmac_secret: str | None = None,
) -> str:
    """Create a one-time token for ``user``; only its hash and HMAC prefix are stored."""
    settings = get_settings()
    secret = hmac_secret or settings.token_hmac_secret
    token = generate_token()
    token_hash = await asyncio.to_thread(hash_token, token)

    setattr(user, kind.hash_field, token_hash)
    setattr(user, kind.hmac_prefix_field, hmac_prefix(secret, token, settings.token_hmac_prefix_length))
    setattr(user, kind.expires_at_field, datetime.now(UTC) + timedelta(minutes=_expiry_minutes(kind)))
    setattr(user, kind.legacy_field, None)
    await session.flush()
    return token


async def resolve_token(
    session: AsyncSession,
    *,
    token: str,
    kind: TokenKind,
    hmac_secret: str | None = None,
) -> tuple[User | None, str | None]:
    settings = get_settings()
    secret = hmac_secret or settings.token_hmac_secret
    prefix = hmac_prefix(secret, token, settings.token_hmac_prefix_length)

    candidates = await find_users_by_hmac_prefix(session, kind, prefix)
    if len(candidates) > 1:
        logger.info("HMAC prefix collision: %d candidates for %s lookup", len(candidates), kind.value)

    for user in candidates:
        token_hash = getattr(user, kind.hash_field)
        if not token_hash:
            continue
        if not await asyncio.to_thread(verify_token_hash, token, token_hash):
            continue
        expires_at = getattr(user, kind.expires_at_field)
        if expires_at is not None and expires_at < datetime.now(UTC):
            return None, "expired_token"
        return user, None
    return None, "invalid_token"


async def consume_token(session: AsyncSession, *, user: User, kind: TokenKind) -> None:
    setattr(user, kind.hash_field, None)
    setattr(user, kind.hmac_prefix_field, None)
    setattr(user, kind.expires_at_field, None)
    if kind is TokenKind.EMAIL_VERIFICATION:
        user.email_verified = True
    await session.flush()
