"""One-shot migration of legacy plaintext user tokens to Argon2 hashes.

Every user carrying ``email_verification_token`` or ``password_reset_token``
is rewritten to hold ``<field>_hash`` and ``<field>_hmac_prefix`` instead.
Per user the order is fixed: hash all present tokens, write a backup of the
plaintext values, then apply one combined set/unset update. A crash between
the backup and the update leaves the user still selectable, so re-running the
migration is safe; ``revert_token_hashes`` replays the backups.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

from argon2 import PasswordHasher

from src.db.token_migration_backups import TokenSnapshot
from src.migration.errors import HashingFailureError, PartialWriteRiskError, StoreUnavailableError
from src.migration.store import (
    HASHED_FIELDS,
    FieldUpdate,
    MigrationBackupRecord,
    TokenStore,
    UserTokenRecord,
)
from src.models.user import TokenKind
from src.security.token_hashing import HMAC_PREFIX_LENGTH, get_password_hasher, hash_token, hmac_prefix

logger = logging.getLogger(__name__)


@dataclass
class _RunStats:
    scanned: int = 0
    changed: int = 0
    skipped: int = 0
    failed: int = 0


async def _hash_legacy_tokens(
    record: UserTokenRecord,
    *,
    hmac_secret: str,
    hasher: PasswordHasher,
    prefix_length: int,
) -> FieldUpdate:
    changes = FieldUpdate()
    for kind in TokenKind:
        token = record.legacy_value(kind)
        if not token:
            continue
        try:
            token_hash = await asyncio.to_thread(hash_token, token, hasher)
        except Exception as exc:
            raise HashingFailureError(record.id, kind.legacy_field) from exc
        if not isinstance(token_hash, str) or not token_hash:
            raise HashingFailureError(record.id, kind.legacy_field)
        changes.set[kind.hash_field] = token_hash
        changes.set[kind.hmac_prefix_field] = hmac_prefix(hmac_secret, token, prefix_length)
        changes.unset.append(kind.legacy_field)
    return changes


async def _migrate_record(
    store: TokenStore,
    record: UserTokenRecord,
    *,
    hmac_secret: str,
    hasher: PasswordHasher,
    prefix_length: int,
    dry_run: bool,
) -> bool:
    changes = await _hash_legacy_tokens(
        record, hmac_secret=hmac_secret, hasher=hasher, prefix_length=prefix_length
    )
    if changes.is_empty():
        return False
    if dry_run:
        return True

    backup_id = await store.insert_backup(
        MigrationBackupRecord(
            original_user_id=record.id,
            original=record.snapshot(),
            migrated_at=datetime.now(UTC),
        )
    )
    try:
        updated = await store.update_user(record.id, changes)
    except StoreUnavailableError:
        logger.error(
            "Store lost after backup %s was written; user %s still holds plaintext tokens",
            backup_id,
            record.id,
            extra={
                "event_type": "token_migration.partial_write_risk",
                "ops_payload": {"user_id": str(record.id), "backup_id": str(backup_id)},
            },
        )
        raise
    except Exception as exc:
        raise PartialWriteRiskError(record.id, backup_id) from exc

    if not updated:
        logger.warning(
            "User %s disappeared before its update; backup %s is orphaned",
            record.id,
            backup_id,
            extra={"event_type": "token_migration.user_missing"},
        )
        return False
    return True


async def migrate_token_hashes(
    store: TokenStore,
    hmac_secret: str,
    *,
    hasher: PasswordHasher | None = None,
    prefix_length: int = HMAC_PREFIX_LENGTH,
    dry_run: bool = False,
) -> int:
    """Hash every legacy plaintext token and return the number of users changed.

    With ``dry_run`` the users that would change are counted but nothing is
    written. Per-user failures are logged and skipped; ``StoreUnavailableError``
    aborts the run.
    """
    if not hmac_secret:
        raise ValueError("hmac_secret must be a non-empty string")
    hasher = hasher or get_password_hasher()
    stats = _RunStats()
    logger.info(
        "Token hash migration started (dry_run=%s)",
        dry_run,
        extra={"event_type": "token_migration.started", "ops_payload": {"dry_run": dry_run}},
    )

    async with aclosing(store.iter_users_with_legacy_tokens()) as records:
        async for record in records:
            stats.scanned += 1
            try:
                changed = await _migrate_record(
                    store,
                    record,
                    hmac_secret=hmac_secret,
                    hasher=hasher,
                    prefix_length=prefix_length,
                    dry_run=dry_run,
                )
            except StoreUnavailableError:
                raise
            except HashingFailureError as exc:
                stats.failed += 1
                logger.exception(
                    "%s; plaintext tokens left in place",
                    exc,
                    extra={
                        "event_type": "token_migration.hashing_failed",
                        "ops_payload": {"user_id": str(exc.user_id), "field": exc.field},
                    },
                )
                continue
            except PartialWriteRiskError as exc:
                stats.failed += 1
                logger.exception(
                    "%s; re-run the migration after confirming the backup exists",
                    exc,
                    extra={
                        "event_type": "token_migration.partial_write_risk",
                        "ops_payload": {"user_id": str(exc.user_id), "backup_id": str(exc.backup_id)},
                    },
                )
                continue
            except Exception:
                stats.failed += 1
                logger.exception(
                    "Token hash migration failed for user %s",
                    record.id,
                    extra={"event_type": "token_migration.record_failed"},
                )
                continue

            if changed:
                stats.changed += 1
            else:
                stats.skipped += 1

    logger.info(
        "Token hash migration finished: %d scanned, %d migrated, %d skipped, %d failed",
        stats.scanned,
        stats.changed,
        stats.skipped,
        stats.failed,
        extra={"event_type": "token_migration.completed", "ops_payload": asdict(stats)},
    )
    return stats.changed


def _restore_changes(snapshot: TokenSnapshot) -> FieldUpdate:
    changes = FieldUpdate(unset=list(HASHED_FIELDS))
    for kind in TokenKind:
        value = getattr(snapshot, kind.legacy_field)
        if value:
            changes.set[kind.legacy_field] = value
    return changes


async def revert_token_hashes(store: TokenStore, *, dry_run: bool = False) -> int:
    """Restore plaintext tokens from every backup and return the number applied.

    Backups are left in place, so reverting twice restores the same values.
    With ``dry_run`` each target user is looked up but not written, so the
    count matches what a real run would restore.
    """
    stats = _RunStats()
    logger.info(
        "Token hash revert started (dry_run=%s)",
        dry_run,
        extra={"event_type": "token_revert.started", "ops_payload": {"dry_run": dry_run}},
    )

    async with aclosing(store.iter_backups()) as backups:
        async for backup in backups:
            stats.scanned += 1
            if backup.original_user_id is None or backup.original.is_empty():
                stats.skipped += 1
                logger.debug("Skipping backup %s with nothing to restore", backup.id)
                continue

            try:
                if dry_run:
                    restored = await store.user_exists(backup.original_user_id)
                else:
                    restored = await store.update_user(
                        backup.original_user_id, _restore_changes(backup.original)
                    )
            except StoreUnavailableError:
                raise
            except Exception:
                stats.failed += 1
                logger.exception(
                    "Failed to restore tokens for user %s from backup %s",
                    backup.original_user_id,
                    backup.id,
                    extra={"event_type": "token_revert.record_failed"},
                )
                continue

            if not restored:
                stats.skipped += 1
                logger.warning(
                    "User %s from backup %s no longer exists; skipping",
                    backup.original_user_id,
                    backup.id,
                    extra={"event_type": "token_revert.user_missing"},
                )
                continue
            stats.changed += 1

    logger.info(
        "Token hash revert finished: %d scanned, %d restored, %d skipped, %d failed",
        stats.scanned,
        stats.changed,
        stats.skipped,
        stats.failed,
        extra={"event_type": "token_revert.completed", "ops_payload": asdict(stats)},
    )
    return stats.changed
