"""Administrative entry points for the token hash migration.

Run: python -m src.migration migrate [--dry-run]
     python -m src.migration revert [--dry-run]
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from uuid import uuid4

import click

from src.config import DEFAULT_TOKEN_HMAC_SECRET, get_settings
from src.db.connection import dispose_engine, get_sessionmaker
from src.migration.errors import StoreUnavailableError
from src.migration.store import SqlAlchemyTokenStore, TokenStore
from src.migration.token_hashes import migrate_token_hashes, revert_token_hashes
from src.ops.events import configure_ops_event_logging, correlation_scope

logger = logging.getLogger(__name__)

CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}
EXIT_STORE_UNAVAILABLE = 2


def build_store() -> SqlAlchemyTokenStore:
    settings = get_settings()
    return SqlAlchemyTokenStore(get_sessionmaker(), batch_size=settings.token_migration_batch_size)


async def _run(operation: Callable[[TokenStore], Awaitable[int]], run_id: str) -> int:
    with correlation_scope(run_id):
        try:
            return await operation(build_store())
        finally:
            await dispose_engine()


def _execute(ctx: click.Context, operation: Callable[[TokenStore], Awaitable[int]], label: str) -> None:
    settings = get_settings()
    buffer = configure_ops_event_logging(settings.ops_event_buffer_size)
    run_id = uuid4().hex
    try:
        count = asyncio.run(_run(operation, run_id))
    except StoreUnavailableError as exc:
        logger.error("Aborting %s: %s", label, exc, extra={"event_type": "token_migration.store_unavailable"})
        click.echo(f"Store unavailable, nothing further was written: {exc}", err=True)
        ctx.exit(EXIT_STORE_UNAVAILABLE)

    counts = buffer.level_counts(run_id)
    click.echo(
        f"{label}: {count} user(s) (run {run_id}, {counts['warning']} skipped, {counts['error']} failed)"
    )
    for event in buffer.for_correlation(run_id, level="warning"):
        click.echo(f"  skipped: {event['message']}", err=True)
    for event in buffer.for_correlation(run_id, level="error"):
        click.echo(f"  failed: {event['message']}", err=True)


@click.group(context_settings=CONTEXT_SETTINGS, help="Token hash migration commands")
@click.option("-v", "--verbose", is_flag=True, help="Log at DEBUG level")
def cli(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("migrate")
@click.option("--dry-run", is_flag=True, help="Count users that would change without writing")
@click.pass_context
def migrate_command(ctx: click.Context, dry_run: bool) -> None:
    """Replace plaintext verification and reset tokens with Argon2 hashes.

    The HMAC key comes from TOKEN_HMAC_SECRET only, so it never appears in
    process listings or shell history.
    """
    settings = get_settings()
    if settings.token_hmac_secret == DEFAULT_TOKEN_HMAC_SECRET:
        logger.warning("TOKEN_HMAC_SECRET is the placeholder default; prefixes will not match production lookups")

    async def operation(store: TokenStore) -> int:
        return await migrate_token_hashes(
            store,
            settings.token_hmac_secret,
            prefix_length=settings.token_hmac_prefix_length,
            dry_run=dry_run,
        )

    _execute(ctx, operation, "would migrate" if dry_run else "migrated")


@cli.command("revert")
@click.option("--dry-run", is_flag=True, help="Count backups that would be applied without writing")
@click.pass_context
def revert_command(ctx: click.Context, dry_run: bool) -> None:
    """Restore plaintext tokens from migration backups."""

    async def operation(store: TokenStore) -> int:
        return await revert_token_hashes(store, dry_run=dry_run)

    _execute(ctx, operation, "would restore" if dry_run else "restored")
