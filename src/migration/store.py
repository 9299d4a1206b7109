from __future__ import annotations

from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import or_, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.token_migration_backups import TokenMigrationBackup, TokenSnapshot, store_backup
from src.migration.errors import StoreUnavailableError
from src.models.user import TokenKind, User

LEGACY_FIELDS = tuple(kind.legacy_field for kind in TokenKind)
HASHED_FIELDS = tuple(
    name for kind in TokenKind for name in (kind.hash_field, kind.hmac_prefix_field)
)
WRITABLE_FIELDS = frozenset(LEGACY_FIELDS + HASHED_FIELDS)

# Connection-level failures; anything else is a per-record error.
_UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, OSError)


@dataclass(frozen=True)
class UserTokenRecord:
    id: UUID
    email_verification_token: str | None = None
    password_reset_token: str | None = None

    def legacy_value(self, kind: TokenKind) -> str | None:
        return getattr(self, kind.legacy_field)

    def snapshot(self) -> TokenSnapshot:
        return TokenSnapshot(
            email_verification_token=self.email_verification_token,
            password_reset_token=self.password_reset_token,
        )


@dataclass
class FieldUpdate:
    set: dict[str, str] = field(default_factory=dict)
    unset: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.set and not self.unset


class MigrationBackupRecord(BaseModel):
    id: UUID | None = None
    original_user_id: UUID | None
    original: TokenSnapshot
    migrated_at: datetime

    @classmethod
    def from_orm_model(cls, row: TokenMigrationBackup) -> MigrationBackupRecord:
        return cls(
            id=row.id,
            original_user_id=row.original_user_id,
            original=TokenSnapshot.model_validate(row.original or {}),
            migrated_at=row.migrated_at,
        )


class TokenStore(Protocol):
    # Both iterators must be closable with aclose(); callers close them early on abort.
    def iter_users_with_legacy_tokens(self) -> AsyncGenerator[UserTokenRecord, None]: ...

    async def insert_backup(self, backup: MigrationBackupRecord) -> UUID: ...

    async def update_user(self, user_id: UUID, changes: FieldUpdate) -> bool: ...

    async def user_exists(self, user_id: UUID) -> bool: ...

    def iter_backups(self) -> AsyncGenerator[MigrationBackupRecord, None]: ...


def _validate_fields(changes: FieldUpdate) -> None:
    unknown = (set(changes.set) | set(changes.unset)) - WRITABLE_FIELDS
    if unknown:
        raise ValueError(f"Refusing to write non-token fields: {sorted(unknown)}")


class SqlAlchemyTokenStore:
    """TokenStore over the ``users`` and ``users_token_migration_backups`` tables.

    Reads stream through a dedicated session with a server-side cursor; every
    write commits in its own transaction, so a backup is durable before the
    user update that depends on it begins.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, batch_size: int = 200) -> None:
        self._session_factory = session_factory
        self._batch_size = batch_size

    async def iter_users_with_legacy_tokens(self) -> AsyncGenerator[UserTokenRecord, None]:
        stmt = (
            select(User.id, User.email_verification_token, User.password_reset_token)
            .where(
                or_(
                    User.email_verification_token.is_not(None),
                    User.password_reset_token.is_not(None),
                )
            )
            .order_by(User.id)
            .execution_options(yield_per=self._batch_size)
        )
        try:
            async with self._session_factory() as session:
                result = await session.stream(stmt)
                async for row in result:
                    yield UserTokenRecord(
                        id=row.id,
                        email_verification_token=row.email_verification_token,
                        password_reset_token=row.password_reset_token,
                    )
        except _UNAVAILABLE_ERRORS as exc:
            raise StoreUnavailableError("Failed to stream users with legacy tokens") from exc

    async def insert_backup(self, backup: MigrationBackupRecord) -> UUID:
        if backup.original_user_id is None:
            raise ValueError("Backup requires original_user_id")
        try:
            async with self._session_factory() as session, session.begin():
                row = await store_backup(
                    session,
                    original_user_id=backup.original_user_id,
                    snapshot=backup.original,
                    migrated_at=backup.migrated_at,
                )
                return row.id
        except _UNAVAILABLE_ERRORS as exc:
            raise StoreUnavailableError("Failed to write token migration backup") from exc

    async def update_user(self, user_id: UUID, changes: FieldUpdate) -> bool:
        _validate_fields(changes)
        values: dict[str, Any] = dict(changes.set)
        values.update({name: None for name in changes.unset})
        if not values:
            return False
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    update(User).where(User.id == user_id).values(**values)
                )
                return bool(result.rowcount)
        except _UNAVAILABLE_ERRORS as exc:
            raise StoreUnavailableError(f"Failed to update user {user_id}") from exc

    async def user_exists(self, user_id: UUID) -> bool:
        try:
            async with self._session_factory() as session:
                found = await session.scalar(select(User.id).where(User.id == user_id))
        except _UNAVAILABLE_ERRORS as exc:
            raise StoreUnavailableError(f"Failed to look up user {user_id}") from exc
        return found is not None

    async def iter_backups(self) -> AsyncGenerator[MigrationBackupRecord, None]:
        stmt = (
            select(TokenMigrationBackup)
            .order_by(TokenMigrationBackup.migrated_at, TokenMigrationBackup.id)
            .execution_options(yield_per=self._batch_size)
        )
        try:
            async with self._session_factory() as session:
                result = await session.stream_scalars(stmt)
                async for row in result:
                    yield MigrationBackupRecord.from_orm_model(row)
        except _UNAVAILABLE_ERRORS as exc:
            raise StoreUnavailableError("Failed to stream token migration backups") from exc

