"""Identity administration endpoints (lookup, manual override, merge)."""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from chatsync.core.config import settings
from chatsync.core.deps import get_db, get_remote_factory
from chatsync.db.enums import IdentityProvenance
from chatsync.schemas.identity import (
    IdentityListResponse,
    IdentityMergeRequest,
    IdentityOverride,
    IdentityRead,
    IdentityStats,
    ReresolveRequest,
    ReresolveResponse,
)
from chatsync.services import identity_enrichment_service, identity_resolver, identity_store
from chatsync.services.chat_sync_service import RemoteFactory
from chatsync.services.identity_store import IdentityNotFoundError
from chatsync.utils.pagination import (
    PaginationParams,
    get_pagination,
)

router = APIRouter(prefix="/identities", tags=["identities"])


@router.get("", response_model=IdentityListResponse)
def list_identities(
    resolved_by: IdentityProvenance | None = None,
    domain: str | None = None,
    min_confidence: int | None = Query(None, ge=0, le=100),
    max_confidence: int | None = Query(None, ge=0, le=100),
    q: str | None = Query(None, max_length=200),
    pagination: PaginationParams = Depends(get_pagination),
    db: Session = Depends(get_db),
):
    items, total = identity_store.list_identities(
        db,
        pagination=pagination,
        resolved_by=resolved_by,
        domain=domain,
        min_confidence=min_confidence,
        max_confidence=max_confidence,
        search=q,
    )
    return IdentityListResponse(
        items=[IdentityRead.model_validate(item) for item in items],
        **pagination.metadata(total),
    )


@router.get("/stats", response_model=IdentityStats)
def identity_stats(db: Session = Depends(get_db)):
    return identity_store.get_identity_stats(db)


@router.post("/merge", response_model=IdentityRead)
def merge_identities(data: IdentityMergeRequest, db: Session = Depends(get_db)):
    """Fold duplicate identities into a primary one."""
    try:
        return identity_store.merge_identities(
            db,
            primary_external_user_id=data.primary_external_user_id,
            duplicate_external_user_ids=data.duplicate_external_user_ids,
        )
    except IdentityNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/reresolve", response_model=ReresolveResponse)
def reresolve_identities(
    data: ReresolveRequest,
    db: Session = Depends(get_db),
    remote_factory: RemoteFactory = Depends(get_remote_factory),
):
    """Retry the directory for low-confidence identities."""
    if not settings.GOOGLE_DIRECTORY_SUBJECT:
        raise HTTPException(status_code=501, detail="GOOGLE_DIRECTORY_SUBJECT not configured")
    directory = remote_factory(settings.GOOGLE_DIRECTORY_SUBJECT)
    try:
        return identity_enrichment_service.reresolve_low_confidence_identities(
            db, directory=directory, limit=data.limit
        )
    finally:
        close = getattr(directory, "close", None)
        if callable(close):
            close()


@router.get("/{external_user_id:path}", response_model=IdentityRead)
def get_identity(external_user_id: str, db: Session = Depends(get_db)):
    """Read-only lookup; accepts "users/123" or "123"."""
    identity = identity_resolver.lookup_identity(db, external_user_id)
    if not identity:
        raise HTTPException(status_code=404, detail="Identity not found")
    return identity


@router.put("/{external_user_id:path}", response_model=IdentityRead)
def set_identity(external_user_id: str, data: IdentityOverride, db: Session = Depends(get_db)):
    """Manual override: provenance manual, confidence 100."""
    try:
        return identity_store.set_manual_identity(
            db,
            external_user_id=external_user_id,
            display_name=data.display_name,
            email=data.email,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.delete("/{external_user_id:path}", status_code=status.HTTP_204_NO_CONTENT)
def delete_identity(external_user_id: str, db: Session = Depends(get_db)):
    try:
        identity_store.delete_identity(db, external_user_id=external_user_id)
    except IdentityNotFoundError:
        raise HTTPException(status_code=404, detail="Identity not found")
