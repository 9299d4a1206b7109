from src.migration.errors import (
    HashingFailureError,
    PartialWriteRiskError,
    StoreUnavailableError,
    TokenMigrationError,
)
from src.migration.store import (
    FieldUpdate,
    MigrationBackupRecord,
    SqlAlchemyTokenStore,
    TokenStore,
    UserTokenRecord,
)
from src.migration.token_hashes import migrate_token_hashes, revert_token_hashes

__all__ = [
    "FieldUpdate",
    "HashingFailureError",
    "MigrationBackupRecord",
    "PartialWriteRiskError",
    "SqlAlchemyTokenStore",
    "StoreUnavailableError",
    "TokenMigrationError",
    "TokenStore",
    "UserTokenRecord",
    "migrate_token_hashes",
    "revert_token_hashes",
]
