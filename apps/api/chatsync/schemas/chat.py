"""Pydantic schemas for chat sync and chat list APIs."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from chatsync.db.enums import ConversationKind, SyncRunStatus


class SyncReportRead(BaseModel):
    """Summary of one reconciliation pass."""

    account_id: UUID
    sync_run_id: UUID | None = None
    total_spaces: int
    new_conversations: int
    updated_conversations: int
    new_messages: int
    skipped_conversations: int


class SyncRunRead(BaseModel):
    id: UUID
    account_id: UUID
    status: SyncRunStatus
    total_spaces: int
    new_conversations: int
    updated_conversations: int
    new_messages: int
    skipped_conversations: int
    error: str | None = None
    started_at: datetime
    finished_at: datetime | None = None

    model_config = {"from_attributes": True}


class ParticipantRead(BaseModel):
    external_user_id: str | None = None
    email: str | None = None
    display_name: str | None = None


class ConversationListItem(BaseModel):
    """One row of the presentation-filtered chat list."""

    id: UUID
    remote_space_id: str
    kind: ConversationKind
    title: str
    message_count: int
    last_message_time: datetime | None = None
    last_message_preview: str | None = None
    other_participant: ParticipantRead | None = None
    participants: list[ParticipantRead] = []


class ConversationListResponse(BaseModel):
    items: list[ConversationListItem]
    total: int
    page: int
    per_page: int
    pages: int


class MessageRead(BaseModel):
    id: UUID
    remote_message_id: str
    text: str
    create_time: datetime
    sender_external_id: str
    sender_display_name: str
    sender_email: str | None = None
    sender_domain: str | None = None
    is_from_owning_account: bool
    is_external: bool

    model_config = {"from_attributes": True}


class MessageListResponse(BaseModel):
    items: list[MessageRead]
    total: int
    page: int
    per_page: int
    pages: int


class AccountSyncResultRead(BaseModel):
    account_id: str
    status: str
    report: SyncReportRead | None = None
    error: str | None = None


class ScheduledSyncResponse(BaseModel):
    accounts: int
    completed: int
    failed: int
    results: list[AccountSyncResultRead]
