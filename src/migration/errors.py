from __future__ import annotations

from uuid import UUID


class TokenMigrationError(Exception):
    pass


class StoreUnavailableError(TokenMigrationError):
    """The backing store could not be reached; the whole run must be retried."""


class HashingFailureError(TokenMigrationError):
    def __init__(self, user_id: UUID, field: str) -> None:
        super().__init__(f"Failed to hash {field} for user {user_id}")
        self.user_id = user_id
        self.field = field


class PartialWriteRiskError(TokenMigrationError):
    """A backup was written but the matching user update did not commit."""

    def __init__(self, user_id: UUID, backup_id: UUID) -> None:
        super().__init__(f"User {user_id} not updated after backup {backup_id} was written")
        self.user_id = user_id
        self.backup_id = backup_id
