"""Chat list presentation - stored conversations -> API-ready, deduplicated list.

Works purely from storage, so it behaves the same on stale or partial data.
Direct conversations with no identifiable other party are left out. Direct
conversations that resolve to the same person collapse into the most recent
one; the others stay in storage untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from chatsync.db.enums import ConversationKind
from chatsync.db.models import Account, Conversation, ConversationMessage
from chatsync.services import account_service, identity_store
from chatsync.services.participant_inference import Participant, infer_other_participant
from chatsync.utils.normalization import as_utc, email_local_part, short_user_label
from chatsync.utils.pagination import PaginationParams, paginate_query

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 120


class ConversationNotFoundError(Exception):
    pass


@dataclass
class ConversationView:
    id: UUID
    remote_space_id: str
    kind: ConversationKind
    title: str
    message_count: int
    last_message_time: datetime | None
    participants: list[dict] = field(default_factory=list)
    other_participant: Participant | None = None
    last_message_preview: str | None = None


def display_title(participant: Participant) -> str:
    """Display name, then email local part, then a short form of the id."""
    if participant.display_name and participant.display_name.strip():
        return participant.display_name.strip()
    local = email_local_part(participant.email)
    if local:
        return local
    return short_user_label(participant.external_user_id)


def _overlay_identity(db: Session, participant: Participant) -> Participant:
    if not participant.external_user_id:
        return participant
    identity = identity_store.get_identity(db, participant.external_user_id)
    if identity is None:
        return participant
    if participant.confidence is not None and identity.confidence <= participant.confidence:
        return participant
    return Participant(
        external_user_id=participant.external_user_id,
        email=identity.email or participant.email,
        display_name=identity.display_name or participant.display_name,
        source=participant.source,
        confidence=identity.confidence,
    )


def _preview(message: ConversationMessage | None) -> str | None:
    if message is None:
        return None
    sender = "You" if message.is_from_owning_account else message.sender_display_name
    text = " ".join((message.text or "").split())
    if len(text) > PREVIEW_LENGTH:
        text = text[: PREVIEW_LENGTH - 3] + "..."
    return f"{sender}: {text}"


def _render(db: Session, account: Account, conversation: Conversation) -> ConversationView | None:
    messages = conversation.messages
    view = ConversationView(
        id=conversation.id,
        remote_space_id=conversation.remote_space_id,
        kind=conversation.kind,
        title=conversation.title or "",
        message_count=conversation.message_count,
        last_message_time=conversation.last_message_time,
        participants=list(conversation.participants or []),
        last_message_preview=_preview(messages[-1] if messages else None),
    )
    if conversation.kind != ConversationKind.DIRECT:
        return view

    participant = infer_other_participant(
        db,
        conversation,
        account.email,
        owning_external_user_id=account.external_user_id,
    )
    if participant is None:
        return None
    participant = _overlay_identity(db, participant)
    view.other_participant = participant
    view.title = display_title(participant)
    return view


def _recency_key(view: ConversationView) -> tuple[int, float]:
    moment = as_utc(view.last_message_time)
    if moment is None:
        return (1, 0.0)
    return (0, -moment.timestamp())


def list_conversations(db: Session, *, account_id: UUID) -> list[ConversationView]:
    """
    Presentation-filtered chat list, most recent first.

    Raises AccountNotFoundError for an unknown account; any problem with an
    individual conversation is logged and that conversation is left out.
    """
    account = account_service.require_account(db, account_id)
    conversations = (
        db.query(Conversation)
        .filter(Conversation.account_id == account.id)
        .order_by(Conversation.created_at.asc(), Conversation.remote_space_id.asc())
        .all()
    )

    views: list[ConversationView] = []
    for conversation in conversations:
        try:
            view = _render(db, account, conversation)
        except Exception:
            logger.exception(
                "Failed to render conversation %s for account %s", conversation.id, account.id
            )
            continue
        if view is not None:
            views.append(view)

    views.sort(key=_recency_key)

    seen_keys: set[tuple[str, str]] = set()
    result: list[ConversationView] = []
    for view in views:
        if view.kind == ConversationKind.DIRECT and view.other_participant is not None:
            keys = view.other_participant.identity_keys()
            if keys & seen_keys:
                continue
            seen_keys |= keys
        result.append(view)
    return result


def get_conversation_messages(
    db: Session,
    *,
    account_id: UUID,
    conversation_id: UUID,
    pagination: PaginationParams,
) -> tuple[list[ConversationMessage], int]:
    """Stored messages of one conversation in create_time order."""
    account = account_service.require_account(db, account_id)
    conversation = (
        db.query(Conversation)
        .filter(Conversation.id == conversation_id, Conversation.account_id == account.id)
        .first()
    )
    if conversation is None:
        raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
    query = (
        db.query(ConversationMessage)
        .filter(ConversationMessage.conversation_id == conversation.id)
        .order_by(ConversationMessage.create_time.asc(), ConversationMessage.remote_message_id.asc())
    )
    return paginate_query(query, pagination)
