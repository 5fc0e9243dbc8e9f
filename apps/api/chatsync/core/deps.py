"""FastAPI dependencies for database access, remote clients and internal auth."""

from typing import Generator

from fastapi import Header, HTTPException
from sqlalchemy.orm import Session

from chatsync.core.config import settings
from chatsync.db.session import SessionLocal
from chatsync.services.chat_sync_service import RemoteFactory
from chatsync.services.google_chat_client import build_remote_source


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_remote_factory() -> RemoteFactory:
    """Factory building a remote chat source for an account email."""
    return build_remote_source


def verify_internal_secret(x_internal_secret: str = Header(...)) -> None:
    """Verify the internal secret header."""
    expected = settings.INTERNAL_SECRET
    if not expected:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if x_internal_secret != expected:
        raise HTTPException(status_code=403, detail="Invalid internal secret")
