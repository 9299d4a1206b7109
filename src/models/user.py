from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from uuid import UUID, uuid4

from pydantic import BaseModel, EmailStr
from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from src.db.connection import Base


class TokenKind(StrEnum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"

    @property
    def legacy_field(self) -> str:
        return f"{self.value}_token"

    @property
    def hash_field(self) -> str:
        return f"{self.value}_token_hash"

    @property
    def hmac_prefix_field(self) -> str:
        return f"{self.value}_token_hmac_prefix"

    @property
    def expires_at_field(self) -> str:
        if self is TokenKind.EMAIL_VERIFICATION:
            return "email_verification_token_expires_at"
        return "password_reset_expires_at"


class User(Base):
    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    password_hash: Mapped[str | None] = mapped_column(String(256), nullable=True)

    # Legacy plaintext columns, cleared by the token hash migration.
    email_verification_token: Mapped[str | None] = mapped_column(String(256), nullable=True)
    password_reset_token: Mapped[str | None] = mapped_column(String(256), nullable=True)

    email_verification_token_hash: Mapped[str | None] = mapped_column(String(256), nullable=True)
    email_verification_token_hmac_prefix: Mapped[str | None] = mapped_column(
        String(64), index=True, nullable=True
    )
    email_verification_token_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    password_reset_token_hash: Mapped[str | None] = mapped_column(String(256), nullable=True)
    password_reset_token_hmac_prefix: Mapped[str | None] = mapped_column(
        String(64), index=True, nullable=True
    )
    password_reset_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )

    def to_schema(self) -> UserRead:
        return UserRead.from_orm_model(self)


class UserCreate(BaseModel):
    email: EmailStr
    display_name: str | None = None


class UserRead(BaseModel):
    id: UUID
    email: EmailStr
    display_name: str | None = None
    email_verified: bool
    has_pending_email_verification: bool
    has_pending_password_reset: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_orm_model(cls, db_user: User) -> UserRead:
        return cls(
            id=db_user.id,
            email=db_user.email,
            display_name=db_user.display_name,
            email_verified=db_user.email_verified,
            has_pending_email_verification=bool(
                db_user.email_verification_token_hash or db_user.email_verification_token
            ),
            has_pending_password_reset=bool(
                db_user.password_reset_token_hash or db_user.password_reset_token
            ),
            created_at=db_user.created_at,
            updated_at=db_user.updated_at,
        )
