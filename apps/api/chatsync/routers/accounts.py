"""Chat account provisioning endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from chatsync.core.deps import get_db
from chatsync.schemas.account import AccountCreate, AccountRead
from chatsync.services import account_service
from chatsync.services.account_service import AccountAlreadyExistsError

router = APIRouter(prefix="/accounts", tags=["accounts"])


@router.post("", response_model=AccountRead, status_code=status.HTTP_201_CREATED)
def create_account(data: AccountCreate, db: Session = Depends(get_db)):
    """Provision an account for chat synchronization."""
    try:
        return account_service.create_account(
            db, email=data.email, display_name=data.display_name
        )
    except AccountAlreadyExistsError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("", response_model=list[AccountRead])
def list_accounts(db: Session = Depends(get_db)):
    return account_service.list_accounts(db)


@router.get("/{account_id}", response_model=AccountRead)
def get_account(account_id: UUID, db: Session = Depends(get_db)):
    account = account_service.get_account(db, account_id)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    return account
