from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel
from sqlalchemy import DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from src.db.connection import Base


class TokenMigrationBackup(Base):
    """Pre-migration plaintext token values for one user.

    ``original_user_id`` is a lookup reference only; there is no foreign key so
    backups survive user deletion and can still be audited.
    """

    __tablename__ = "users_token_migration_backups"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    original_user_id: Mapped[UUID | None] = mapped_column(
        PGUUID(as_uuid=True), index=True, nullable=True
    )
    original: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    migrated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )


class TokenSnapshot(BaseModel):
    email_verification_token: str | None = None
    password_reset_token: str | None = None

    def is_empty(self) -> bool:
        return not (self.email_verification_token or self.password_reset_token)


async def store_backup(
    session: AsyncSession,
    *,
    original_user_id: UUID,
    snapshot: TokenSnapshot,
    migrated_at: datetime | None = None,
) -> TokenMigrationBackup:
    backup = TokenMigrationBackup(
        original_user_id=original_user_id,
        original=snapshot.model_dump(exclude_none=True),
        migrated_at=migrated_at or datetime.now(UTC),
    )
    session.add(backup)
    await session.flush()
    return backup
