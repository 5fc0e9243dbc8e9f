"""Chat reconciliation ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chatsync.db.base import Base
from chatsync.db.enums import ConversationKind, IdentityProvenance, SyncRunStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_type(enum_cls, *, name: str) -> Enum:
    """Bind Python str-enums to their value strings (VARCHAR + CHECK on every backend)."""
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
    )


class Account(Base):
    """Locally tracked mailbox whose chat spaces are synchronized."""

    __tablename__ = "chat_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    # The account's own platform user id, once discovered.
    external_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    last_sync_time: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )

    conversations: Mapped[list["Conversation"]] = relationship(
        back_populates="account",
        cascade="all, delete-orphan",
    )


class Identity(Base):
    """Resolved human (or system) behind an opaque platform user id."""

    __tablename__ = "identities"
    __table_args__ = (
        CheckConstraint("confidence >= 0 AND confidence <= 100", name="confidence_range"),
        Index("idx_identities_confidence", "confidence"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    external_user_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True, index=True)
    email_domain: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    confidence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resolved_by: Mapped[IdentityProvenance] = mapped_column(
        _enum_type(IdentityProvenance, name="identity_provenance"), nullable=False
    )
    discovered_by_account_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("chat_accounts.id", ondelete="SET NULL"), nullable=True
    )
    original_resource_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    first_seen: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)
    last_seen: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)
    seen_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )


class Conversation(Base):
    """One remote space as seen by one account."""

    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("account_id", "remote_space_id", name="uq_conversations_account_space"),
        Index("idx_conversations_account_last_message", "account_id", "last_message_time"),
        Index("idx_conversations_remote_space", "remote_space_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("chat_accounts.id", ondelete="CASCADE"), nullable=False
    )
    remote_space_id: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[ConversationKind] = mapped_column(
        _enum_type(ConversationKind, name="conversation_kind"), nullable=False
    )
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # Ordered [{external_user_id, email, display_name}]; replaced wholesale on sync.
    participants: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_message_time: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )

    account: Mapped["Account"] = relationship(back_populates="conversations")
    messages: Mapped[list["ConversationMessage"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by=lambda: [
            ConversationMessage.create_time,
            ConversationMessage.remote_message_id,
        ],
    )


class ConversationMessage(Base):
    """Append-only message stored under its conversation."""

    __tablename__ = "conversation_messages"
    __table_args__ = (
        UniqueConstraint(
            "conversation_id", "remote_message_id", name="uq_conversation_messages_remote_id"
        ),
        Index("idx_conversation_messages_conv_time", "conversation_id", "create_time"),
        Index("idx_conversation_messages_sender", "sender_external_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    remote_message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    create_time: Mapped[datetime] = mapped_column(nullable=False)
    sender_external_id: Mapped[str] = mapped_column(String(128), nullable=False)
    # Denormalized from Identity at merge time.
    sender_display_name: Mapped[str] = mapped_column(Text, nullable=False)
    sender_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    sender_domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_from_owning_account: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_external: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )

    conversation: Mapped["Conversation"] = relationship(back_populates="messages")


class SyncRun(Base):
    """Ledger row for one account reconciliation pass."""

    __tablename__ = "chat_sync_runs"
    __table_args__ = (
        Index("idx_chat_sync_runs_account_started", "account_id", "started_at"),
        Index("idx_chat_sync_runs_account_status", "account_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("chat_accounts.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[SyncRunStatus] = mapped_column(
        _enum_type(SyncRunStatus, name="sync_run_status"), nullable=False
    )
    total_spaces: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    new_conversations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_conversations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    new_messages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_conversations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(nullable=True)

    account: Mapped["Account"] = relationship()
