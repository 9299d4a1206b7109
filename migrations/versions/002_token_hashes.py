"""Hashed one-time tokens and the plaintext token backup table.

Revision ID: 002_token_hashes
Revises: 001_initial_schema
Create Date: 2026-10-05 00:00:00.000000

The legacy plaintext columns stay until every environment has run
``python -m src.migration migrate``.
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "002_token_hashes"
down_revision = "001_initial_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("users", sa.Column("email_verification_token_hash", sa.String(256), nullable=True))
    op.add_column(
        "users", sa.Column("email_verification_token_hmac_prefix", sa.String(64), nullable=True)
    )
    op.add_column(
        "users",
        sa.Column("email_verification_token_expires_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.add_column("users", sa.Column("password_reset_token_hash", sa.String(256), nullable=True))
    op.add_column("users", sa.Column("password_reset_token_hmac_prefix", sa.String(64), nullable=True))
    # Prefix lookups narrow candidates before Argon2 verification
    op.create_index(
        "ix_users_email_verification_token_hmac_prefix",
        "users",
        ["email_verification_token_hmac_prefix"],
    )
    op.create_index(
        "ix_users_password_reset_token_hmac_prefix",
        "users",
        ["password_reset_token_hmac_prefix"],
    )

    op.create_table(
        "users_token_migration_backups",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("original_user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column(
            "original",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "migrated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )
    op.create_index(
        "ix_users_token_migration_backups_original_user_id",
        "users_token_migration_backups",
        ["original_user_id"],
    )


def downgrade() -> None:
    op.drop_index(
        "ix_users_token_migration_backups_original_user_id",
        table_name="users_token_migration_backups",
    )
    op.drop_table("users_token_migration_backups")
    op.drop_index("ix_users_password_reset_token_hmac_prefix", table_name="users")
    op.drop_index("ix_users_email_verification_token_hmac_prefix", table_name="users")
    op.drop_column("users", "password_reset_token_hmac_prefix")
    op.drop_column("users", "password_reset_token_hash")
    op.drop_column("users", "email_verification_token_expires_at")
    op.drop_column("users", "email_verification_token_hmac_prefix")
    op.drop_column("users", "email_verification_token_hash")
