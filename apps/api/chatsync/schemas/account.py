"""Pydantic schemas for chat accounts."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class AccountCreate(BaseModel):
    """Provision an account whose chats will be synchronized."""

    email: str = Field(..., min_length=3, max_length=320)
    display_name: str | None = Field(None, max_length=255)


class AccountRead(BaseModel):
    id: UUID
    email: str
    display_name: str | None = None
    external_user_id: str | None = None
    last_sync_time: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
