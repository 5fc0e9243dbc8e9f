"""Chat sync and chat list endpoints for one account."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from chatsync.core.deps import get_db, get_remote_factory
from chatsync.schemas.chat import (
    ConversationListItem,
    ConversationListResponse,
    MessageListResponse,
    MessageRead,
    ParticipantRead,
    SyncReportRead,
    SyncRunRead,
)
from chatsync.services import account_service, chat_presentation_service, chat_sync_service
from chatsync.services.account_service import AccountNotFoundError
from chatsync.services.chat_presentation_service import ConversationNotFoundError, ConversationView
from chatsync.services.chat_sync_service import (
    RemoteFactory,
    SyncAlreadyRunningError,
    SyncListingError,
)
from chatsync.utils.pagination import (
    PaginationParams,
    get_pagination,
    paginate_sequence,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/accounts/{account_id}/chats", tags=["chats"])


def _view_to_item(view: ConversationView) -> ConversationListItem:
    participant = view.other_participant
    return ConversationListItem(
        id=view.id,
        remote_space_id=view.remote_space_id,
        kind=view.kind,
        title=view.title,
        message_count=view.message_count,
        last_message_time=view.last_message_time,
        last_message_preview=view.last_message_preview,
        other_participant=(
            ParticipantRead(
                external_user_id=participant.external_user_id,
                email=participant.email,
                display_name=participant.display_name,
            )
            if participant
            else None
        ),
        participants=[ParticipantRead(**entry) for entry in view.participants],
    )


@router.post("/sync", response_model=SyncReportRead)
def sync_chats(
    account_id: UUID,
    db: Session = Depends(get_db),
    remote_factory: RemoteFactory = Depends(get_remote_factory),
):
    """Run one reconciliation pass for the account."""
    account = account_service.get_account(db, account_id)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")

    remote = remote_factory(account.email)
    try:
        report = chat_sync_service.sync_account(db, account_id=account.id, remote=remote)
    except SyncAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except SyncListingError as e:
        raise HTTPException(status_code=502, detail=str(e))
    finally:
        close = getattr(remote, "close", None)
        if callable(close):
            close()
    return report.as_dict()


@router.get("/sync-runs", response_model=list[SyncRunRead])
def list_sync_runs(
    account_id: UUID,
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    if not account_service.get_account(db, account_id):
        raise HTTPException(status_code=404, detail="Account not found")
    return chat_sync_service.list_sync_runs(db, account_id=account_id, limit=limit)


@router.get("", response_model=ConversationListResponse)
def list_chats(
    account_id: UUID,
    pagination: PaginationParams = Depends(get_pagination),
    db: Session = Depends(get_db),
):
    """Deduplicated chat list, most recent first."""
    try:
        views = chat_presentation_service.list_conversations(db, account_id=account_id)
    except AccountNotFoundError:
        raise HTTPException(status_code=404, detail="Account not found")

    page, total = paginate_sequence(views, pagination)
    return ConversationListResponse(
        items=[_view_to_item(view) for view in page], **pagination.metadata(total)
    )


@router.get("/{conversation_id}/messages", response_model=MessageListResponse)
def list_chat_messages(
    account_id: UUID,
    conversation_id: UUID,
    pagination: PaginationParams = Depends(get_pagination),
    db: Session = Depends(get_db),
):
    try:
        messages, total = chat_presentation_service.get_conversation_messages(
            db,
            account_id=account_id,
            conversation_id=conversation_id,
            pagination=pagination,
        )
    except AccountNotFoundError:
        raise HTTPException(status_code=404, detail="Account not found")
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found")

    return MessageListResponse(
        items=[MessageRead.model_validate(message) for message in messages],
        **pagination.metadata(total),
    )
