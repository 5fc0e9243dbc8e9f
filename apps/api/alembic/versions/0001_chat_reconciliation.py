"""Chat reconciliation baseline

Revision ID: 0001_chat_reconciliation
Revises:
Create Date: 2026-10-19

Tables:
- chat_accounts: Locally tracked accounts whose chats are synchronized
- identities: External user id -> resolved identity with confidence/provenance
- conversations: One remote space per account
- conversation_messages: Append-only messages per conversation
- chat_sync_runs: One row per reconciliation pass
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_chat_reconciliation"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "chat_accounts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("external_user_id", sa.String(128), nullable=True),
        sa.Column("last_sync_time", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_chat_accounts"),
        sa.UniqueConstraint("email", name="uq_chat_accounts_email"),
    )
    op.create_index(
        "ix_chat_accounts_external_user_id", "chat_accounts", ["external_user_id"]
    )

    op.create_table(
        "identities",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("external_user_id", sa.String(128), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("email_domain", sa.String(255), nullable=True),
        sa.Column("confidence", sa.Integer(), nullable=False),
        # remote-directory, membership-list, message-authorship, heuristic-fallback, manual
        sa.Column("resolved_by", sa.String(32), nullable=False),
        sa.Column("discovered_by_account_id", sa.Uuid(), nullable=True),
        sa.Column("original_resource_name", sa.String(255), nullable=True),
        sa.Column("first_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("seen_count", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_identities"),
        sa.UniqueConstraint("external_user_id", name="uq_identities_external_user_id"),
        sa.CheckConstraint(
            "confidence >= 0 AND confidence <= 100",
            name="ck_identities_confidence_range",
        ),
        sa.ForeignKeyConstraint(
            ["discovered_by_account_id"],
            ["chat_accounts.id"],
            name="fk_identities_discovered_by_account_id_chat_accounts",
            ondelete="SET NULL",
        ),
    )
    op.create_index("idx_identities_confidence", "identities", ["confidence"])
    op.create_index("ix_identities_email", "identities", ["email"])
    op.create_index("ix_identities_email_domain", "identities", ["email_domain"])

    op.create_table(
        "conversations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("remote_space_id", sa.String(255), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),  # DIRECT, GROUP
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("participants", sa.JSON(), nullable=False),
        sa.Column("message_count", sa.Integer(), nullable=False),
        sa.Column("last_message_time", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_conversations"),
        sa.UniqueConstraint(
            "account_id", "remote_space_id", name="uq_conversations_account_space"
        ),
        sa.ForeignKeyConstraint(
            ["account_id"],
            ["chat_accounts.id"],
            name="fk_conversations_account_id_chat_accounts",
            ondelete="CASCADE",
        ),
    )
    op.create_index(
        "idx_conversations_account_last_message",
        "conversations",
        ["account_id", "last_message_time"],
    )
    op.create_index("idx_conversations_remote_space", "conversations", ["remote_space_id"])

    op.create_table(
        "conversation_messages",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("conversation_id", sa.Uuid(), nullable=False),
        sa.Column("remote_message_id", sa.String(255), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("create_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sender_external_id", sa.String(128), nullable=False),
        sa.Column("sender_display_name", sa.Text(), nullable=False),
        sa.Column("sender_email", sa.String(320), nullable=True),
        sa.Column("sender_domain", sa.String(255), nullable=True),
        sa.Column("is_from_owning_account", sa.Boolean(), nullable=False),
        sa.Column("is_external", sa.Boolean(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id", name="pk_conversation_messages"),
        sa.UniqueConstraint(
            "conversation_id",
            "remote_message_id",
            name="uq_conversation_messages_remote_id",
        ),
        sa.ForeignKeyConstraint(
            ["conversation_id"],
            ["conversations.id"],
            name="fk_conversation_messages_conversation_id_conversations",
            ondelete="CASCADE",
        ),
    )
    op.create_index(
        "idx_conversation_messages_conv_time",
        "conversation_messages",
        ["conversation_id", "create_time"],
    )
    op.create_index(
        "idx_conversation_messages_sender", "conversation_messages", ["sender_external_id"]
    )

    op.create_table(
        "chat_sync_runs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),  # running, completed, failed
        sa.Column("total_spaces", sa.Integer(), nullable=False),
        sa.Column("new_conversations", sa.Integer(), nullable=False),
        sa.Column("updated_conversations", sa.Integer(), nullable=False),
        sa.Column("new_messages", sa.Integer(), nullable=False),
        sa.Column("skipped_conversations", sa.Integer(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_chat_sync_runs"),
        sa.ForeignKeyConstraint(
            ["account_id"],
            ["chat_accounts.id"],
            name="fk_chat_sync_runs_account_id_chat_accounts",
            ondelete="CASCADE",
        ),
    )
    op.create_index(
        "idx_chat_sync_runs_account_started", "chat_sync_runs", ["account_id", "started_at"]
    )
    op.create_index(
        "idx_chat_sync_runs_account_status", "chat_sync_runs", ["account_id", "status"]
    )


def downgrade() -> None:
    op.drop_table("chat_sync_runs")
    op.drop_table("conversation_messages")
    op.drop_table("conversations")
    op.drop_table("identities")
    op.drop_table("chat_accounts")
