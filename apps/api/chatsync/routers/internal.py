"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from external cron (Cloud Scheduler/GH Actions).
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from chatsync.core.deps import get_db, get_remote_factory, verify_internal_secret
from chatsync.schemas.chat import ScheduledSyncResponse
from chatsync.services import chat_sync_service, identity_enrichment_service
from chatsync.services.chat_sync_service import RemoteFactory

router = APIRouter(
    prefix="/internal/scheduled",
    tags=["internal"],
    dependencies=[Depends(verify_internal_secret)],
)


class IdentityLinkingResponse(BaseModel):
    accounts_checked: int
    accounts_linked: int
    messages_updated: int


@router.post("/chat-sync", response_model=ScheduledSyncResponse)
def scheduled_chat_sync(
    db: Session = Depends(get_db),
    remote_factory: RemoteFactory = Depends(get_remote_factory),
):
    """Sync every account, then link account identities."""
    results = chat_sync_service.sync_all_accounts(db, remote_factory=remote_factory)
    completed = sum(1 for result in results if result["status"] == "completed")
    return ScheduledSyncResponse(
        accounts=len(results),
        completed=completed,
        failed=len(results) - completed,
        results=results,
    )


@router.post("/identity-linking", response_model=IdentityLinkingResponse)
def scheduled_identity_linking(db: Session = Depends(get_db)):
    return identity_enrichment_service.link_account_identities(db)
