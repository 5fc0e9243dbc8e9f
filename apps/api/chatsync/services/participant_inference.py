"""Participant inference - who is on the other side of a direct conversation.

Order of evidence:
1. stored participants that are not the owning account
2. senders of messages not written by the owning account (largest group wins,
   ties go to the sender seen first); for one-sided conversations, another
   account's row for the same remote space names that account as the party
3. nothing - the caller decides what "no party" means
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from chatsync.db.models import Account, Conversation, ConversationMessage
from chatsync.services import identity_store
from chatsync.utils.normalization import canonical_user_id, email_local_part, normalize_email

logger = logging.getLogger(__name__)

SOURCE_PARTICIPANTS = "participants"
SOURCE_MESSAGES = "messages"
SOURCE_CROSS_ACCOUNT = "cross-account"


@dataclass(frozen=True)
class Participant:
    external_user_id: str | None
    email: str | None
    display_name: str | None
    source: str = SOURCE_PARTICIPANTS
    # Confidence of the data behind display_name/email; None when it came
    # from denormalized fields rather than the identity store.
    confidence: int | None = None

    @property
    def identity_key(self) -> str | None:
        return self.external_user_id or self.email

    def identity_keys(self) -> set[tuple[str, str]]:
        """Every key this participant can be matched on."""
        keys: set[tuple[str, str]] = set()
        if self.external_user_id:
            keys.add(("id", self.external_user_id))
        if self.email:
            keys.add(("email", self.email))
        return keys

    def as_dict(self) -> dict:
        return {
            "external_user_id": self.external_user_id,
            "email": self.email,
            "display_name": self.display_name,
        }


class _Owner:
    def __init__(self, email: str | None, external_user_id: str | None):
        self.email = normalize_email(email)
        self.external_user_id = canonical_user_id(external_user_id)

    def matches(self, *, email: str | None = None, external_user_id: str | None = None) -> bool:
        if self.email and normalize_email(email) == self.email:
            return True
        if self.external_user_id and canonical_user_id(external_user_id) == self.external_user_id:
            return True
        return False


def _from_stored_participants(conversation: Conversation, owner: _Owner) -> Participant | None:
    for entry in conversation.participants or []:
        if not isinstance(entry, dict):
            continue
        external_user_id = canonical_user_id(entry.get("external_user_id"))
        email = normalize_email(entry.get("email"))
        if not external_user_id and not email:
            continue
        if owner.matches(email=email, external_user_id=external_user_id):
            continue
        return Participant(
            external_user_id=external_user_id,
            email=email,
            display_name=(entry.get("display_name") or None),
            source=SOURCE_PARTICIPANTS,
        )
    return None


def _from_message_senders(db: Session, conversation: Conversation, owner: _Owner) -> Participant | None:
    counts: dict[str, int] = {}
    first_message: dict[str, ConversationMessage] = {}
    for message in conversation.messages:
        if message.is_from_owning_account:
            continue
        if owner.matches(email=message.sender_email, external_user_id=message.sender_external_id):
            continue
        sender = canonical_user_id(message.sender_external_id)
        if not sender:
            continue
        counts[sender] = counts.get(sender, 0) + 1
        first_message.setdefault(sender, message)

    # dicts keep insertion order, so a stable sort breaks ties by first occurrence
    for sender in sorted(counts, key=lambda key: -counts[key]):
        identity = identity_store.get_identity(db, sender)
        if identity is not None:
            if owner.matches(email=identity.email):
                continue
            return Participant(
                external_user_id=sender,
                email=identity.email,
                display_name=identity.display_name,
                source=SOURCE_MESSAGES,
                confidence=identity.confidence,
            )
        message = first_message[sender]
        return Participant(
            external_user_id=sender,
            email=normalize_email(message.sender_email),
            display_name=message.sender_display_name or None,
            source=SOURCE_MESSAGES,
        )
    return None


def _from_other_accounts(db: Session, conversation: Conversation, owner: _Owner) -> Participant | None:
    rows = (
        db.query(Conversation, Account)
        .join(Account, Account.id == Conversation.account_id)
        .filter(
            Conversation.remote_space_id == conversation.remote_space_id,
            Conversation.account_id != conversation.account_id,
        )
        .order_by(Conversation.created_at.asc())
        .all()
    )
    for _other_conversation, other_account in rows:
        if owner.matches(email=other_account.email, external_user_id=other_account.external_user_id):
            continue
        identity = None
        if other_account.external_user_id:
            identity = identity_store.get_identity(db, other_account.external_user_id)
        if identity is None:
            identity = identity_store.find_identity_by_email(db, other_account.email)
        if identity is not None:
            return Participant(
                external_user_id=identity.external_user_id,
                email=identity.email or normalize_email(other_account.email),
                display_name=identity.display_name,
                source=SOURCE_CROSS_ACCOUNT,
                confidence=identity.confidence,
            )
        return Participant(
            external_user_id=canonical_user_id(other_account.external_user_id),
            email=normalize_email(other_account.email),
            display_name=other_account.display_name or email_local_part(other_account.email),
            source=SOURCE_CROSS_ACCOUNT,
        )
    return None


def infer_other_participant(
    db: Session,
    conversation: Conversation,
    owning_account_email: str | None,
    *,
    owning_external_user_id: str | None = None,
) -> Participant | None:
    """Other party of a direct conversation, or None when nothing identifies one."""
    owner = _Owner(owning_account_email, owning_external_user_id)

    participant = _from_stored_participants(conversation, owner)
    if participant is not None:
        return participant

    participant = _from_message_senders(db, conversation, owner)
    if participant is not None:
        return participant

    participant = _from_other_accounts(db, conversation, owner)
    if participant is not None:
        logger.debug(
            "Inferred cross-account participant for space %s", conversation.remote_space_id
        )
    return participant
