from __future__ import annotations

import hashlib
import hmac
import logging
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from src.db.token_migration_backups import TokenSnapshot
from src.migration.errors import StoreUnavailableError
from src.migration.store import MigrationBackupRecord
from src.migration.token_hashes import migrate_token_hashes, revert_token_hashes
from src.security.token_hashing import get_password_hasher, verify_token_hash
from tests.fixtures.token_store import InMemoryTokenStore

SECRET = "migration-secret"
HASHED_KEYS = {
    "email_verification_token_hash",
    "email_verification_token_hmac_prefix",
    "password_reset_token_hash",
    "password_reset_token_hmac_prefix",
}


def _prefix(token: str, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), token.encode(), hashlib.sha256).hexdigest()[:8]


class _SelectiveFailingHasher:
    def __init__(self, *bad_tokens: str) -> None:
        self._bad_tokens = set(bad_tokens)

    def hash(self, token: str) -> str:
        if token in self._bad_tokens:
            raise RuntimeError("argon2 exploded")
        return get_password_hasher().hash(token)


@pytest.mark.asyncio
async def test_single_email_verification_scenario() -> None:
    store = InMemoryTokenStore()
    user_id = store.add_user(email_verification_token="abc123")

    assert await migrate_token_hashes(store, SECRET) == 1

    doc = store.users[user_id]
    assert "email_verification_token" not in doc
    assert doc["email_verification_token_hash"] != "abc123"
    assert verify_token_hash("abc123", doc["email_verification_token_hash"])
    assert doc["email_verification_token_hmac_prefix"] == _prefix("abc123")
    assert "password_reset_token_hash" not in doc

    assert await revert_token_hashes(store) == 1
    doc = store.users[user_id]
    assert doc["email_verification_token"] == "abc123"
    assert not HASHED_KEYS & doc.keys()


@pytest.mark.asyncio
async def test_selects_users_with_either_or_both_tokens() -> None:
    store = InMemoryTokenStore()
    verify_only = store.add_user(email_verification_token="ev-1")
    reset_only = store.add_user(password_reset_token="pr-1")
    both = store.add_user(email_verification_token="ev-2", password_reset_token="pr-2")
    neither = store.add_user(display_name="plain")
    untouched = dict(store.users[neither])

    assert await migrate_token_hashes(store, SECRET) == 3

    assert store.users[neither] == untouched
    assert {"email_verification_token_hash", "email_verification_token_hmac_prefix"} <= store.users[verify_only].keys()
    assert {"password_reset_token_hash", "password_reset_token_hmac_prefix"} <= store.users[reset_only].keys()
    assert HASHED_KEYS <= store.users[both].keys()
    for user_id in (verify_only, reset_only, both):
        assert "email_verification_token" not in store.users[user_id]
        assert "password_reset_token" not in store.users[user_id]


@pytest.mark.asyncio
async def test_backup_written_before_update_with_full_snapshot() -> None:
    store = InMemoryTokenStore()
    both = store.add_user(email_verification_token="ev-2", password_reset_token="pr-2")
    reset_only = store.add_user(password_reset_token="pr-1")

    await migrate_token_hashes(store, SECRET)

    assert store.operations == [
        ("backup", both),
        ("update", both),
        ("backup", reset_only),
        ("update", reset_only),
    ]
    by_user = {backup.original_user_id: backup for backup in store.backups}
    assert by_user[both].original == TokenSnapshot(
        email_verification_token="ev-2", password_reset_token="pr-2"
    )
    assert by_user[reset_only].original == TokenSnapshot(password_reset_token="pr-1")
    assert by_user[reset_only].migrated_at.tzinfo is not None


@pytest.mark.asyncio
async def test_prefix_reproducible_and_hash_salted() -> None:
    store = InMemoryTokenStore()
    first = store.add_user(password_reset_token="same-token")
    second = store.add_user(password_reset_token="same-token")

    await migrate_token_hashes(store, SECRET)

    a, b = store.users[first], store.users[second]
    assert a["password_reset_token_hmac_prefix"] == b["password_reset_token_hmac_prefix"] == _prefix("same-token")
    assert a["password_reset_token_hash"] != b["password_reset_token_hash"]
    assert a["password_reset_token_hash"].startswith("$argon2id$")


@pytest.mark.asyncio
async def test_second_run_is_noop() -> None:
    store = InMemoryTokenStore()
    store.add_user(email_verification_token="ev-1")
    store.add_user(password_reset_token="pr-1")

    assert await migrate_token_hashes(store, SECRET) == 2
    snapshot = {user_id: dict(doc) for user_id, doc in store.users.items()}

    assert await migrate_token_hashes(store, SECRET) == 0
    assert store.users == snapshot
    assert len(store.backups) == 2


@pytest.mark.asyncio
async def test_empty_legacy_value_is_not_migrated() -> None:
    store = InMemoryTokenStore()
    user_id = store.add_user(email_verification_token="")

    assert await migrate_token_hashes(store, SECRET) == 0
    assert store.users[user_id] == {"email": store.users[user_id]["email"], "email_verification_token": ""}
    assert store.backups == []


@pytest.mark.asyncio
async def test_dry_run_counts_without_writing() -> None:
    store = InMemoryTokenStore()
    user_id = store.add_user(email_verification_token="ev-1", password_reset_token="pr-1")
    before = dict(store.users[user_id])

    assert await migrate_token_hashes(store, SECRET, dry_run=True) == 1
    assert store.users[user_id] == before
    assert store.backups == []


@pytest.mark.asyncio
async def test_rejects_empty_hmac_secret() -> None:
    with pytest.raises(ValueError):
        await migrate_token_hashes(InMemoryTokenStore(), "")


@pytest.mark.asyncio
async def test_hashing_failure_leaves_record_untouched(caplog: pytest.LogCaptureFixture) -> None:
    store = InMemoryTokenStore()
    broken = store.add_user(email_verification_token="ev-ok", password_reset_token="pr-bad")
    healthy = store.add_user(password_reset_token="pr-good")

    with caplog.at_level(logging.ERROR):
        count = await migrate_token_hashes(store, SECRET, hasher=_SelectiveFailingHasher("pr-bad"))

    assert count == 1
    assert store.users[broken]["email_verification_token"] == "ev-ok"
    assert store.users[broken]["password_reset_token"] == "pr-bad"
    assert not HASHED_KEYS & store.users[broken].keys()
    assert [backup.original_user_id for backup in store.backups] == [healthy]
    assert any(getattr(r, "event_type", "") == "token_migration.hashing_failed" for r in caplog.records)


@pytest.mark.asyncio
async def test_backup_failure_skips_update() -> None:
    store = InMemoryTokenStore()
    failing = store.add_user(email_verification_token="ev-1")
    other = store.add_user(email_verification_token="ev-2")
    store.fail_backup_for.add(failing)

    assert await migrate_token_hashes(store, SECRET) == 1
    assert store.users[failing]["email_verification_token"] == "ev-1"
    assert ("update", failing) not in store.operations
    assert "email_verification_token" not in store.users[other]


@pytest.mark.asyncio
async def test_update_failure_is_logged_and_recoverable(caplog: pytest.LogCaptureFixture) -> None:
    store = InMemoryTokenStore()
    user_id = store.add_user(password_reset_token="pr-1")
    store.fail_update_for.add(user_id)

    with caplog.at_level(logging.ERROR):
        assert await migrate_token_hashes(store, SECRET) == 0

    assert store.users[user_id]["password_reset_token"] == "pr-1"
    assert len(store.backups) == 1
    risk = [r for r in caplog.records if getattr(r, "event_type", "") == "token_migration.partial_write_risk"]
    assert risk and risk[0].ops_payload["backup_id"] == str(store.backups[0].id)

    store.fail_update_for.clear()
    assert await migrate_token_hashes(store, SECRET) == 1
    assert "password_reset_token" not in store.users[user_id]


@pytest.mark.asyncio
async def test_store_unavailable_aborts_run() -> None:
    store = InMemoryTokenStore()
    store.add_user(email_verification_token="ev-1")
    store.unavailable = True

    with pytest.raises(StoreUnavailableError):
        await migrate_token_hashes(store, SECRET)


@pytest.mark.asyncio
async def test_store_lost_after_backup_propagates_and_keeps_plaintext() -> None:
    store = InMemoryTokenStore()
    first = store.add_user(email_verification_token="ev-1")
    second = store.add_user(email_verification_token="ev-2")
    store.unavailable_after_backup = True

    with pytest.raises(StoreUnavailableError):
        await migrate_token_hashes(store, SECRET)

    assert store.users[first]["email_verification_token"] == "ev-1"
    assert store.users[second]["email_verification_token"] == "ev-2"
    assert len(store.backups) == 1


@pytest.mark.asyncio
async def test_revert_round_trip_restores_both_fields() -> None:
    store = InMemoryTokenStore()
    user_id = store.add_user(email_verification_token="ev-2", password_reset_token="pr-2")
    await migrate_token_hashes(store, SECRET)

    assert await revert_token_hashes(store) == 1

    doc = store.users[user_id]
    assert doc["email_verification_token"] == "ev-2"
    assert doc["password_reset_token"] == "pr-2"
    assert not HASHED_KEYS & doc.keys()


@pytest.mark.asyncio
async def test_revert_skips_empty_and_orphan_backups() -> None:
    store = InMemoryTokenStore()
    user_id = store.add_user(email_verification_token="ev-1")
    await migrate_token_hashes(store, SECRET)
    store.backups.append(
        MigrationBackupRecord(
            id=uuid4(), original_user_id=user_id, original=TokenSnapshot(), migrated_at=store.backups[0].migrated_at
        )
    )
    store.backups.append(
        MigrationBackupRecord(
            id=uuid4(),
            original_user_id=None,
            original=TokenSnapshot(password_reset_token="x"),
            migrated_at=store.backups[0].migrated_at,
        )
    )

    assert await revert_token_hashes(store) == 1
    assert store.users[user_id]["email_verification_token"] == "ev-1"


@pytest.mark.asyncio
async def test_revert_skips_deleted_user(caplog: pytest.LogCaptureFixture) -> None:
    store = InMemoryTokenStore()
    gone = store.add_user(password_reset_token="pr-1")
    kept = store.add_user(password_reset_token="pr-2")
    await migrate_token_hashes(store, SECRET)
    del store.users[gone]

    with caplog.at_level(logging.WARNING):
        assert await revert_token_hashes(store) == 1

    assert store.users[kept]["password_reset_token"] == "pr-2"
    assert any(getattr(r, "event_type", "") == "token_revert.user_missing" for r in caplog.records)


@pytest.mark.asyncio
async def test_revert_is_repeatable_and_keeps_backups() -> None:
    store = InMemoryTokenStore()
    user_id = store.add_user(email_verification_token="ev-1")
    await migrate_token_hashes(store, SECRET)

    assert await revert_token_hashes(store) == 1
    assert await revert_token_hashes(store) == 1
    assert len(store.backups) == 1
    assert store.users[user_id]["email_verification_token"] == "ev-1"


@pytest.mark.asyncio
async def test_revert_dry_run_does_not_write() -> None:
    store = InMemoryTokenStore()
    user_id = store.add_user(email_verification_token="ev-1")
    await migrate_token_hashes(store, SECRET)
    migrated = dict(store.users[user_id])

    assert await revert_token_hashes(store, dry_run=True) == 1
    assert store.users[user_id] == migrated


@pytest.mark.asyncio
async def test_revert_store_unavailable_propagates() -> None:
    store = InMemoryTokenStore()
    store.unavailable = True
    with pytest.raises(StoreUnavailableError):
        await revert_token_hashes(store)


@pytest.mark.asyncio
async def test_aborted_migration_closes_user_cursor() -> None:
    store = InMemoryTokenStore()
    store.add_user(email_verification_token="ev-1")
    store.add_user(email_verification_token="ev-2")
    store.unavailable_after_backup = True

    with pytest.raises(StoreUnavailableError):
        await migrate_token_hashes(store, SECRET)

    assert store.open_cursors == 0


@pytest.mark.asyncio
async def test_aborted_revert_closes_backup_cursor() -> None:
    store = InMemoryTokenStore()
    store.add_user(email_verification_token="ev-1")
    store.add_user(password_reset_token="pr-1")
    await migrate_token_hashes(store, SECRET)
    store.update_user = AsyncMock(side_effect=StoreUnavailableError("store offline"))  # type: ignore[method-assign]

    with pytest.raises(StoreUnavailableError):
        await revert_token_hashes(store)

    assert store.update_user.await_count == 1
    assert store.open_cursors == 0


@pytest.mark.asyncio
async def test_revert_dry_run_count_matches_real_run_for_deleted_user() -> None:
    store = InMemoryTokenStore()
    gone = store.add_user(password_reset_token="pr-1")
    await migrate_token_hashes(store, SECRET)
    del store.users[gone]

    assert await revert_token_hashes(store, dry_run=True) == 0
    assert await revert_token_hashes(store) == 0
    assert store.open_cursors == 0
