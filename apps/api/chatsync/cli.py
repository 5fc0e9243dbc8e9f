"""CLI tools for chat sync administration."""

import logging

import click

from chatsync.core.config import settings
from chatsync.db.session import SessionLocal
from chatsync.services import (
    account_service,
    chat_sync_service,
    identity_enrichment_service,
    identity_resolver,
    identity_store,
)
from chatsync.services.account_service import AccountAlreadyExistsError
from chatsync.services.chat_sync_service import ChatSyncError
from chatsync.services.google_chat_client import build_remote_source


@click.group()
def cli():
    """Chat sync CLI tools."""
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@cli.command()
@click.option("--email", required=True, help="Account email address")
@click.option("--display-name", default=None, help="Optional display name")
def create_account(email: str, display_name: str | None):
    """
    Provision an account for chat synchronization.

    Example:
        python -m chatsync.cli create-account --email "ops@example.com"
    """
    db = SessionLocal()
    try:
        account = account_service.create_account(db, email=email, display_name=display_name)
        click.echo(f"✓ Created account: {account.email}")
        click.echo(f"  ID: {account.id}")
    except (AccountAlreadyExistsError, ValueError) as e:
        db.rollback()
        click.echo(f"❌ {e}")
        raise SystemExit(1)
    finally:
        db.close()


@cli.command()
@click.option("--email", required=True, help="Account email to sync")
def sync_account(email: str):
    """Run one reconciliation pass for an account."""
    db = SessionLocal()
    remote = None
    try:
        account = account_service.get_account_by_email(db, email)
        if not account:
            click.echo(f"❌ Account not found: {email}")
            raise SystemExit(1)

        remote = build_remote_source(account.email)
        report = chat_sync_service.sync_account(db, account_id=account.id, remote=remote)
        click.echo(f"✓ Synced {account.email}")
        click.echo(f"  Spaces: {report.total_spaces}")
        click.echo(f"  New conversations: {report.new_conversations}")
        click.echo(f"  Updated conversations: {report.updated_conversations}")
        click.echo(f"  New messages: {report.new_messages}")
        click.echo(f"  Skipped: {report.skipped_conversations}")
    except ChatSyncError as e:
        db.rollback()
        click.echo(f"❌ Sync failed: {e}")
        raise SystemExit(1)
    finally:
        if remote is not None:
            remote.close()
        db.close()


@cli.command()
@click.option("--skip-linking", is_flag=True, help="Do not run identity linking afterwards")
def sync_all(skip_linking: bool):
    """Sync every account in turn."""
    db = SessionLocal()
    try:
        results = chat_sync_service.sync_all_accounts(
            db, remote_factory=build_remote_source, link_identities=not skip_linking
        )
        for result in results:
            if result["status"] == "completed":
                report = result["report"] or {}
                click.echo(
                    f"✓ {result['account_id']}: {report.get('new_messages', 0)} new messages"
                )
            else:
                click.echo(f"❌ {result['account_id']}: {result['error']}")
        click.echo(f"→ {len(results)} accounts processed")
    finally:
        db.close()


@cli.command()
@click.argument("external_user_id")
def resolve_identity(external_user_id: str):
    """Show the stored identity for a platform user id (read-only)."""
    db = SessionLocal()
    try:
        identity = identity_resolver.lookup_identity(db, external_user_id)
        if not identity:
            click.echo(f"❌ No identity stored for {external_user_id}")
            raise SystemExit(1)
        click.echo(f"{identity.external_user_id}: {identity.display_name}")
        click.echo(f"  Email: {identity.email or '-'}")
        click.echo(f"  Confidence: {identity.confidence} ({identity.resolved_by.value})")
        click.echo(f"  Seen: {identity.seen_count}x")
    finally:
        db.close()


@cli.command()
@click.argument("external_user_id")
@click.option("--display-name", required=True, help="Display name to assign")
@click.option("--email", default=None, help="Email address to assign")
def set_identity(external_user_id: str, display_name: str, email: str | None):
    """
    Manually assign an identity (confidence 100, never overwritten by syncs).

    Example:
        python -m chatsync.cli set-identity users/1234 --display-name "Jane Doe" --email jane@example.com
    """
    db = SessionLocal()
    try:
        identity = identity_store.set_manual_identity(
            db, external_user_id=external_user_id, display_name=display_name, email=email
        )
        click.echo(f"✓ {identity.external_user_id} → {identity.display_name}")
    except ValueError as e:
        db.rollback()
        click.echo(f"❌ {e}")
        raise SystemExit(1)
    finally:
        db.close()


@cli.command()
def link_identities():
    """Learn account platform ids from message authorship."""
    db = SessionLocal()
    try:
        counts = identity_enrichment_service.link_account_identities(db)
        click.echo(
            f"✓ Linked {counts['accounts_linked']}/{counts['accounts_checked']} accounts, "
            f"{counts['messages_updated']} messages updated"
        )
    finally:
        db.close()


@cli.command()
@click.option("--limit", default=100, help="Maximum identities to retry (default: 100)")
def reresolve_identities(limit: int):
    """Retry the directory for low-confidence identities."""
    if not settings.GOOGLE_DIRECTORY_SUBJECT:
        click.echo("❌ GOOGLE_DIRECTORY_SUBJECT not configured")
        raise SystemExit(1)
    db = SessionLocal()
    directory = build_remote_source(settings.GOOGLE_DIRECTORY_SUBJECT)
    try:
        counts = identity_enrichment_service.reresolve_low_confidence_identities(
            db, directory=directory, limit=limit
        )
        click.echo(f"✓ Upgraded {counts['upgraded']} of {counts['checked']} identities")
    finally:
        directory.close()
        db.close()


if __name__ == "__main__":
    cli()
