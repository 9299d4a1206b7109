from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.user import TokenKind, User, UserCreate


async def create_user(session: AsyncSession, data: UserCreate) -> User:
    user = User(
        email=data.email,
        display_name=data.display_name or data.email.split("@")[0],
    )
    session.add(user)
    await session.flush()
    await session.refresh(user)
    return user


async def get_user_by_id(session: AsyncSession, user_id: UUID) -> User | None:
    return await session.get(User, user_id)


async def get_user_by_email(session: AsyncSession, email: str) -> User | None:
    result = await session.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()


async def find_users_by_hmac_prefix(
    session: AsyncSession, kind: TokenKind, prefix: str
) -> list[User]:
    """Candidates whose stored HMAC prefix for ``kind`` matches; callers must still verify the hash."""
    column = getattr(User, kind.hmac_prefix_field)
    hash_column = getattr(User, kind.hash_field)
    result = await session.execute(
        select(User).where(column == prefix, hash_column.is_not(None))
    )
    return list(result.scalars().all())
