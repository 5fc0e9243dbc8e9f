"""Account provisioning and lookup."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from chatsync.db.models import Account
from chatsync.utils.normalization import normalize_email

logger = logging.getLogger(__name__)


class AccountServiceError(Exception):
    """Base exception for account service errors."""

    pass


class AccountNotFoundError(AccountServiceError):
    pass


class AccountAlreadyExistsError(AccountServiceError):
    pass


def get_account(db: Session, account_id: UUID) -> Account | None:
    return db.query(Account).filter(Account.id == account_id).first()


def require_account(db: Session, account_id: UUID) -> Account:
    account = get_account(db, account_id)
    if account is None:
        raise AccountNotFoundError(f"Account {account_id} not found")
    return account


def get_account_by_email(db: Session, email: str) -> Account | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return db.query(Account).filter(Account.email == normalized).first()


def list_accounts(db: Session) -> list[Account]:
    return db.query(Account).order_by(Account.email.asc()).all()


def create_account(db: Session, *, email: str, display_name: str | None = None) -> Account:
    normalized = normalize_email(email)
    if not normalized or "@" not in normalized:
        raise ValueError("A valid email address is required")
    if get_account_by_email(db, normalized) is not None:
        raise AccountAlreadyExistsError(f"Account {normalized} already exists")

    account = Account(
        email=normalized,
        display_name=(display_name or "").strip() or None,
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    logger.info("Provisioned chat account %s", account.id)
    return account
