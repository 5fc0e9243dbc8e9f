"""
Chat sync service - reconcile one account's remote spaces into local storage.

A pass lists every space (following page tokens), then for each space fetches
members and messages, resolves every sender before building message rows, and
merges: new conversations are inserted, existing ones only gain messages whose
remote id is not stored yet. Message listing for a known conversation starts at
its newest stored message, so a space larger than the page cap catches up over
several passes. Each conversation is committed on its own, so a
pass that dies halfway leaves every conversation it already touched valid.

Failure handling:
- member listing fails -> membership derived from message senders
- message listing fails -> space skipped for this pass
- space listing fails  -> pass fails, last_sync_time untouched
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, TypedDict
from uuid import UUID

from sqlalchemy.orm import Session

from chatsync.core.concurrency import account_sync_locks
from chatsync.core.config import settings
from chatsync.core.structured_logging import build_log_context
from chatsync.db.enums import ConversationKind, IdentityProvenance, RemoteSpaceType, SyncRunStatus
from chatsync.db.models import Account, Conversation, ConversationMessage, SyncRun
from chatsync.services import account_service, identity_enrichment_service, identity_store
from chatsync.services.account_service import AccountNotFoundError
from chatsync.services.identity_resolver import (
    DIRECTORY_CONFIDENCE,
    ResolutionContext,
    ResolvedIdentity,
    resolve_identity,
)
from chatsync.services.identity_store import IdentityCandidate
from chatsync.services.participant_inference import SOURCE_PARTICIPANTS, infer_other_participant
from chatsync.services.remote_source import (
    RemoteChatError,
    RemoteChatSource,
    RemoteMember,
    RemoteMessage,
    RemoteSpace,
)
from chatsync.utils.normalization import (
    as_utc,
    canonical_user_id,
    email_local_part,
    extract_email_domain,
    normalize_email,
    parse_remote_timestamp,
)

logger = logging.getLogger(__name__)

MAX_SPACE_PAGES = 1000

RemoteFactory = Callable[[str], RemoteChatSource]


class ChatSyncError(Exception):
    """Base exception for chat sync errors."""

    pass


class SyncAlreadyRunningError(ChatSyncError):
    """Another pass for the same account is in flight."""

    pass


class SyncListingError(ChatSyncError):
    """The top-level space listing failed; the pass was aborted."""

    pass


@dataclass
class SyncReport:
    account_id: UUID
    sync_run_id: UUID | None = None
    total_spaces: int = 0
    new_conversations: int = 0
    updated_conversations: int = 0
    new_messages: int = 0
    skipped_conversations: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class AccountSyncResult(TypedDict):
    account_id: str
    status: str
    report: dict | None
    error: str | None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _space_kind(space_type: str) -> ConversationKind:
    if space_type == RemoteSpaceType.DIRECT_MESSAGE.value:
        return ConversationKind.DIRECT
    return ConversationKind.GROUP


# =============================================================================
# Remote fetch helpers
# =============================================================================


def _list_all_spaces(remote: RemoteChatSource) -> list[RemoteSpace]:
    spaces: list[RemoteSpace] = []
    seen_tokens: set[str] = set()
    page_token: str | None = None
    for page_number in range(MAX_SPACE_PAGES):
        try:
            page, next_token = remote.list_spaces(page_token)
        except Exception as exc:
            raise SyncListingError(f"Space listing failed: {exc}") from exc
        spaces.extend(page)
        if not next_token or next_token in seen_tokens:
            break
        if page_number == MAX_SPACE_PAGES - 1:
            logger.warning(
                "Space page cap (%s) reached; spaces past %s are not synced this pass",
                MAX_SPACE_PAGES,
                len(spaces),
            )
        seen_tokens.add(next_token)
        page_token = next_token
    return spaces


def _list_all_members(remote: RemoteChatSource, space_id: str) -> tuple[list[RemoteMember], bool]:
    """(members, complete); complete is False when the page cap cut the listing short."""
    members: list[RemoteMember] = []
    page_token: str | None = None
    for _ in range(settings.CHAT_SYNC_MAX_MEMBER_PAGES):
        page, page_token = remote.list_members(space_id, page_token)
        members.extend(page)
        if not page_token:
            return members, True
    logger.warning(
        "Member page cap reached for %s after %s members; stored participants are kept",
        space_id,
        len(members),
    )
    return members, False


def _list_all_messages(
    remote: RemoteChatSource, space_id: str, created_after: datetime | None = None
) -> list[RemoteMessage]:
    messages: list[RemoteMessage] = []
    page_token: str | None = None
    for page_number in range(settings.CHAT_SYNC_MAX_MESSAGE_PAGES):
        page, page_token = remote.list_messages(space_id, page_token, created_after=created_after)
        messages.extend(page)
        if not page_token:
            break
        if page_number == settings.CHAT_SYNC_MAX_MESSAGE_PAGES - 1:
            logger.warning(
                "Message page cap reached for %s; the next pass resumes after the newest stored message",
                space_id,
            )
    return messages


# =============================================================================
# Account-level helpers
# =============================================================================


def _has_running_run(db: Session, account_id: UUID) -> bool:
    cutoff = _now_utc() - timedelta(minutes=settings.CHAT_SYNC_STALE_RUN_MINUTES)
    return (
        db.query(SyncRun.id)
        .filter(
            SyncRun.account_id == account_id,
            SyncRun.status == SyncRunStatus.RUNNING,
            SyncRun.started_at >= cutoff,
        )
        .first()
        is not None
    )


def _discover_account_user_id(db: Session, account: Account, remote: RemoteChatSource) -> None:
    """Best-effort directory lookup of the account's own platform id."""
    if account.external_user_id:
        return
    try:
        user = remote.get_user(account.email)
    except Exception as exc:
        logger.warning(
            "Could not look up own user id: %s",
            exc,
            extra=build_log_context(account_id=str(account.id), account_email=account.email),
        )
        return
    if not user or not user.get("user_id"):
        return

    external_user_id = canonical_user_id(user["user_id"])
    account.external_user_id = external_user_id
    account.updated_at = _now_utc()
    identity_store.upsert_identity(
        db,
        IdentityCandidate(
            external_user_id=external_user_id,
            display_name=(user.get("full_name") or "").strip()
            or account.display_name
            or email_local_part(account.email)
            or account.email,
            email=normalize_email(user.get("primary_email")) or account.email,
            confidence=DIRECTORY_CONFIDENCE,
            resolved_by=IdentityProvenance.REMOTE_DIRECTORY,
            discovered_by_account_id=account.id,
            original_resource_name=user["user_id"],
        ),
    )
    db.commit()


def _finish_run(
    db: Session,
    run: SyncRun,
    *,
    status: SyncRunStatus,
    report: SyncReport,
    error: str | None = None,
) -> None:
    run.status = status
    run.total_spaces = report.total_spaces
    run.new_conversations = report.new_conversations
    run.updated_conversations = report.updated_conversations
    run.new_messages = report.new_messages
    run.skipped_conversations = report.skipped_conversations
    run.error = error[:2000] if error else None
    run.finished_at = _now_utc()
    db.add(run)
    db.commit()


# =============================================================================
# Per-space merge
# =============================================================================


def _is_owner(account: Account, sender_external_id: str, identity: ResolvedIdentity) -> bool:
    if identity.email and normalize_email(identity.email) == account.email:
        return True
    return bool(
        account.external_user_id
        and canonical_user_id(sender_external_id) == account.external_user_id
    )


def _participant_entry(identity: ResolvedIdentity) -> dict:
    return {
        "external_user_id": identity.external_user_id,
        "email": identity.email,
        "display_name": identity.display_name,
    }


def _other_party_known(conversation: Conversation, account: Account) -> bool:
    for entry in conversation.participants or []:
        if normalize_email(entry.get("email")) == account.email:
            continue
        if account.external_user_id and entry.get("external_user_id") == account.external_user_id:
            continue
        return True
    return False


def _merge_space(
    db: Session,
    account: Account,
    remote: RemoteChatSource,
    space: RemoteSpace,
    report: SyncReport,
) -> None:
    space_id = space["space_id"]
    log_context = build_log_context(account_id=str(account.id), space_id=space_id)
    kind = _space_kind(space.get("space_type", ""))
    conversation = (
        db.query(Conversation)
        .filter(
            Conversation.account_id == account.id,
            Conversation.remote_space_id == space_id,
        )
        .first()
    )

    # Resume from the newest stored message (inclusive, deduplicated below) so
    # spaces larger than the page cap keep advancing pass after pass.
    created_after = None
    if conversation is not None and conversation.last_message_time is not None:
        created_after = as_utc(conversation.last_message_time) - timedelta(microseconds=1)

    # Messages are mandatory for the space; a failure here skips it.
    messages = _list_all_messages(remote, space_id, created_after)

    members_available = True
    members_complete = True
    try:
        members, members_complete = _list_all_members(remote, space_id)
    except Exception as exc:
        members_available = False
        members_complete = False
        members = []
        logger.warning(
            "Member listing failed for %s, deriving membership from senders: %s",
            space_id,
            exc,
            extra=log_context,
        )

    member_map: dict[str, RemoteMember] = {}
    for member in members:
        key = canonical_user_id(member.get("external_user_id"))
        if key:
            member_map.setdefault(key, member)

    ordered_ids: list[str] = list(member_map)
    for message in messages:
        key = canonical_user_id(message.get("sender_external_id"))
        if key and key not in ordered_ids:
            ordered_ids.append(key)

    context = ResolutionContext(account=account, space_id=space_id, members=member_map)
    resolved: dict[str, ResolvedIdentity] = {
        key: resolve_identity(db, key, context=context, directory=remote) for key in ordered_ids
    }

    if members_available:
        fresh_participants = [_participant_entry(resolved[key]) for key in member_map]
    else:
        fresh_participants = [_participant_entry(resolved[key]) for key in ordered_ids]

    is_new = conversation is None
    changed = False
    stored_participants: list[dict] = []
    if conversation is None:
        conversation = Conversation(
            account_id=account.id,
            remote_space_id=space_id,
            kind=kind,
            title=space.get("display_name") or "",
            participants=fresh_participants,
            message_count=0,
        )
        db.add(conversation)
        db.flush()
    else:
        stored_participants = list(conversation.participants or [])
        title = space.get("display_name") or ""
        if title and title != conversation.title:
            conversation.title = title
            changed = True
        # Partial or sender-derived membership never replaces a stored list.
        replace = members_complete or not stored_participants
        if replace and fresh_participants != stored_participants:
            conversation.participants = fresh_participants

    owner_domain = extract_email_domain(account.email)
    known_ids = {message.remote_message_id for message in conversation.messages}
    added = 0
    for message in messages:
        remote_message_id = message.get("message_id")
        if not remote_message_id or remote_message_id in known_ids:
            continue
        create_time = parse_remote_timestamp(message.get("create_time"))
        sender_key = canonical_user_id(message.get("sender_external_id"))
        if create_time is None or not sender_key:
            logger.warning(
                "Dropping message %s with unusable timestamp or sender",
                remote_message_id,
                extra=log_context,
            )
            continue
        identity = resolved[sender_key]
        sender_domain = identity.email_domain or extract_email_domain(identity.email)
        conversation.messages.append(
            ConversationMessage(
                remote_message_id=remote_message_id,
                text=message.get("text") or "",
                create_time=create_time,
                sender_external_id=sender_key,
                sender_display_name=identity.display_name,
                sender_email=identity.email,
                sender_domain=sender_domain,
                is_from_owning_account=_is_owner(account, sender_key, identity),
                is_external=bool(sender_domain and owner_domain and sender_domain != owner_domain),
            )
        )
        known_ids.add(remote_message_id)
        added += 1

    if added:
        conversation.message_count = len(conversation.messages)
        conversation.last_message_time = max(
            as_utc(message.create_time) for message in conversation.messages
        )
        changed = True
    elif conversation.message_count != len(conversation.messages):
        conversation.message_count = len(conversation.messages)
        changed = True

    if kind == ConversationKind.DIRECT and not _other_party_known(conversation, account):
        participant = infer_other_participant(
            db,
            conversation,
            account.email,
            owning_external_user_id=account.external_user_id,
        )
        if participant is not None and participant.source != SOURCE_PARTICIPANTS:
            conversation.participants = [*(conversation.participants or []), participant.as_dict()]

    if not is_new and (conversation.participants or []) != stored_participants:
        changed = True
    if is_new or changed:
        conversation.updated_at = _now_utc()
    db.add(conversation)
    db.commit()

    report.new_messages += added
    if is_new:
        report.new_conversations += 1
    elif changed:
        report.updated_conversations += 1


# =============================================================================
# Public API
# =============================================================================


def sync_account(db: Session, *, account_id: UUID, remote: RemoteChatSource) -> SyncReport:
    """
    Run one reconciliation pass for an account.

    Raises:
        AccountNotFoundError: unknown account
        SyncAlreadyRunningError: a pass for this account is in flight
        SyncListingError: space listing failed (run recorded as failed)
    """
    account = account_service.require_account(db, account_id)
    lock_key = str(account.id)
    if not account_sync_locks.try_acquire(lock_key):
        raise SyncAlreadyRunningError(f"Sync already running for account {account.id}")

    try:
        if _has_running_run(db, account.id):
            raise SyncAlreadyRunningError(f"Sync already running for account {account.id}")

        run = SyncRun(account_id=account.id, status=SyncRunStatus.RUNNING, started_at=_now_utc())
        db.add(run)
        db.commit()
        report = SyncReport(account_id=account.id, sync_run_id=run.id)
        log_context = build_log_context(
            account_id=str(account.id),
            account_email=account.email,
            sync_run_id=str(run.id),
        )
        logger.info("Chat sync started", extra=log_context)

        try:
            _discover_account_user_id(db, account, remote)
            spaces = _list_all_spaces(remote)
            report.total_spaces = len(spaces)

            for space in spaces:
                try:
                    _merge_space(db, account, remote, space, report)
                except RemoteChatError as exc:
                    db.rollback()
                    report.skipped_conversations += 1
                    logger.warning(
                        "Skipping space %s for this pass: %s",
                        space.get("space_id"),
                        exc,
                        extra=log_context,
                    )
                except Exception:
                    db.rollback()
                    report.skipped_conversations += 1
                    logger.exception(
                        "Failed to merge space %s", space.get("space_id"), extra=log_context
                    )
        except Exception as exc:
            db.rollback()
            _finish_run(db, run, status=SyncRunStatus.FAILED, report=report, error=str(exc))
            logger.error("Chat sync failed: %s", exc, extra=log_context)
            raise

        account.last_sync_time = _now_utc()
        account.updated_at = _now_utc()
        db.add(account)
        _finish_run(db, run, status=SyncRunStatus.COMPLETED, report=report)
        logger.info(
            "Chat sync completed: %s new conversations, %s updated, %s new messages, %s skipped",
            report.new_conversations,
            report.updated_conversations,
            report.new_messages,
            report.skipped_conversations,
            extra=log_context,
        )
        return report
    finally:
        account_sync_locks.release(lock_key)


def sync_all_accounts(
    db: Session,
    *,
    remote_factory: RemoteFactory,
    link_identities: bool = True,
) -> list[AccountSyncResult]:
    """Sync every account in turn; one account failing does not stop the rest."""
    results: list[AccountSyncResult] = []
    for account in account_service.list_accounts(db):
        account_id = account.id
        remote = remote_factory(account.email)
        try:
            report = sync_account(db, account_id=account_id, remote=remote)
            results.append(
                AccountSyncResult(
                    account_id=str(account_id), status="completed", report=report.as_dict(), error=None
                )
            )
        except (ChatSyncError, AccountNotFoundError) as exc:
            db.rollback()
            results.append(
                AccountSyncResult(account_id=str(account_id), status="failed", report=None, error=str(exc))
            )
        except Exception as exc:
            db.rollback()
            logger.exception(
                "Unexpected sync failure", extra=build_log_context(account_id=str(account_id))
            )
            results.append(
                AccountSyncResult(account_id=str(account_id), status="failed", report=None, error=str(exc))
            )
        finally:
            close = getattr(remote, "close", None)
            if callable(close):
                close()

    if link_identities and results:
        identity_enrichment_service.link_account_identities(db)
    return results


def list_sync_runs(db: Session, *, account_id: UUID, limit: int = 20) -> list[SyncRun]:
    return (
        db.query(SyncRun)
        .filter(SyncRun.account_id == account_id)
        .order_by(SyncRun.started_at.desc())
        .limit(limit)
        .all()
    )
