"""
Identity enrichment - improve stored identities after syncs.

- link_account_identities: learn each account's own platform id from message
  authorship and record the account's address against it
- reresolve_low_confidence_identities: retry the directory for weak identities
- refresh_message_senders: rewrite denormalized sender fields from the store

All three are idempotent and safe to run on a schedule.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Iterable, TypedDict

from sqlalchemy.orm import Session

from chatsync.db.enums import ConversationKind, IdentityProvenance
from chatsync.db.models import Account, Conversation, ConversationMessage, Identity
from chatsync.services import identity_store
from chatsync.services.identity_resolver import (
    ACCEPT_CONFIDENCE,
    DIRECTORY_CONFIDENCE,
    lookup_directory,
)
from chatsync.services.identity_store import IdentityCandidate
from chatsync.services.remote_source import DirectoryLookup
from chatsync.utils.normalization import canonical_user_id, email_local_part, extract_email_domain

logger = logging.getLogger(__name__)

AUTHORSHIP_CONFIDENCE = 80
MIN_DIRECT_CONVERSATIONS = 2


class LinkCounts(TypedDict):
    accounts_checked: int
    accounts_linked: int
    messages_updated: int


class ReresolveCounts(TypedDict):
    checked: int
    upgraded: int
    messages_updated: int


def _owner_sender_from_flags(db: Session, account: Account) -> str | None:
    rows = (
        db.query(ConversationMessage.sender_external_id)
        .join(Conversation, Conversation.id == ConversationMessage.conversation_id)
        .filter(
            Conversation.account_id == account.id,
            ConversationMessage.is_from_owning_account.is_(True),
        )
        .all()
    )
    counts = Counter(sender for (sender,) in rows if sender)
    if not counts:
        return None
    return counts.most_common(1)[0][0]


def _owner_sender_from_direct_presence(db: Session, account: Account) -> str | None:
    """The sender present in the most of the account's direct conversations (unique, >= 2)."""
    rows = (
        db.query(ConversationMessage.conversation_id, ConversationMessage.sender_external_id)
        .join(Conversation, Conversation.id == ConversationMessage.conversation_id)
        .filter(
            Conversation.account_id == account.id,
            Conversation.kind == ConversationKind.DIRECT,
        )
        .distinct()
        .all()
    )
    presence = Counter(sender for _conversation_id, sender in rows if sender)
    ranked = presence.most_common(2)
    if not ranked or ranked[0][1] < MIN_DIRECT_CONVERSATIONS:
        return None
    if len(ranked) > 1 and ranked[1][1] == ranked[0][1]:
        return None
    return ranked[0][0]


def infer_account_user_id(db: Session, account: Account) -> str | None:
    """Best guess at the platform id an account sends messages as."""
    return _owner_sender_from_flags(db, account) or _owner_sender_from_direct_presence(db, account)


def link_account_identities(db: Session) -> LinkCounts:
    counts = LinkCounts(accounts_checked=0, accounts_linked=0, messages_updated=0)
    linked_ids: list[str] = []

    for account in db.query(Account).order_by(Account.email.asc()).all():
        counts["accounts_checked"] += 1
        external_user_id = canonical_user_id(account.external_user_id) or infer_account_user_id(
            db, account
        )
        if not external_user_id:
            continue

        identity_store.upsert_identity(
            db,
            IdentityCandidate(
                external_user_id=external_user_id,
                display_name=account.display_name or email_local_part(account.email) or account.email,
                email=account.email,
                confidence=AUTHORSHIP_CONFIDENCE,
                resolved_by=IdentityProvenance.MESSAGE_AUTHORSHIP,
                discovered_by_account_id=account.id,
                original_resource_name=f"users/{external_user_id}",
            ),
        )
        if account.external_user_id != external_user_id:
            logger.info("Linked account %s to platform user %s", account.id, external_user_id)
            account.external_user_id = external_user_id
            db.add(account)
        counts["accounts_linked"] += 1
        linked_ids.append(external_user_id)

    db.commit()
    if linked_ids:
        counts["messages_updated"] = refresh_message_senders(db, linked_ids)
    return counts


def reresolve_low_confidence_identities(
    db: Session,
    *,
    directory: DirectoryLookup,
    limit: int = 100,
) -> ReresolveCounts:
    """Retry the directory for identities below the acceptance threshold."""
    counts = ReresolveCounts(checked=0, upgraded=0, messages_updated=0)
    candidates = (
        db.query(Identity)
        .filter(
            Identity.confidence < ACCEPT_CONFIDENCE,
            Identity.resolved_by != IdentityProvenance.MANUAL,
        )
        .order_by(Identity.seen_count.desc(), Identity.external_user_id.asc())
        .limit(limit)
        .all()
    )

    upgraded_ids: list[str] = []
    for identity in candidates:
        counts["checked"] += 1
        hit = lookup_directory(directory, identity.original_resource_name or identity.external_user_id)
        if hit is None:
            continue
        display_name, email = hit
        identity_store.upsert_identity(
            db,
            IdentityCandidate(
                external_user_id=identity.external_user_id,
                display_name=display_name,
                email=email,
                confidence=DIRECTORY_CONFIDENCE,
                resolved_by=IdentityProvenance.REMOTE_DIRECTORY,
            ),
        )
        upgraded_ids.append(identity.external_user_id)
        counts["upgraded"] += 1

    db.commit()
    if upgraded_ids:
        counts["messages_updated"] = refresh_message_senders(db, upgraded_ids)
    logger.info(
        "Re-resolved %s of %s low-confidence identities", counts["upgraded"], counts["checked"]
    )
    return counts


def refresh_message_senders(db: Session, external_user_ids: Iterable[str] | None = None) -> int:
    """
    Rewrite denormalized sender fields from the identity store.

    Returns the number of messages that changed.
    """
    query = (
        db.query(ConversationMessage, Account)
        .join(Conversation, Conversation.id == ConversationMessage.conversation_id)
        .join(Account, Account.id == Conversation.account_id)
    )
    if external_user_ids is not None:
        keys = sorted({key for key in map(canonical_user_id, external_user_ids) if key})
        if not keys:
            return 0
        query = query.filter(ConversationMessage.sender_external_id.in_(keys))

    identities: dict[str, Identity | None] = {}
    updated = 0
    for message, account in query.all():
        sender = message.sender_external_id
        if sender not in identities:
            identities[sender] = identity_store.get_identity(db, sender)
        identity = identities[sender]
        if identity is None:
            continue

        owner_domain = extract_email_domain(account.email)
        sender_domain = identity.email_domain
        values = {
            "sender_display_name": identity.display_name,
            "sender_email": identity.email,
            "sender_domain": sender_domain,
            "is_from_owning_account": identity.email == account.email
            or (account.external_user_id is not None and sender == account.external_user_id),
            "is_external": bool(sender_domain and owner_domain and sender_domain != owner_domain),
        }
        if any(getattr(message, field) != value for field, value in values.items()):
            for field, value in values.items():
                setattr(message, field, value)
            updated += 1

    db.commit()
    if updated:
        logger.info("Refreshed sender fields on %s messages", updated)
    return updated
