"""support tables

Revision ID: 0001_support_tables
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_support_tables"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "support_conversations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("account_id", sa.String(64), nullable=True),
        sa.Column("guest_token", sa.String(100), nullable=True),
        sa.Column("operator_id", sa.String(64), nullable=True),
        sa.Column("topic", sa.String(20), nullable=False),
        sa.Column("subject", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("priority", sa.String(20), nullable=False),
        _timestamp("last_message_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "(account_id IS NULL) <> (guest_token IS NULL)",
            name="ck_support_conversation_single_owner",
        ),
    )
    op.create_index("ix_support_conversations_account_id", "support_conversations", ["account_id"])
    op.create_index("ix_support_conversations_guest_token", "support_conversations", ["guest_token"])
    op.create_index("ix_support_conversations_operator_id", "support_conversations", ["operator_id"])
    op.create_index("ix_support_conversations_status", "support_conversations", ["status"])
    op.create_index(
        "uq_support_conversation_open_account",
        "support_conversations",
        ["account_id", "topic"],
        unique=True,
        sqlite_where=sa.text("status = 'open' AND account_id IS NOT NULL"),
        postgresql_where=sa.text("status = 'open' AND account_id IS NOT NULL"),
    )
    op.create_index(
        "uq_support_conversation_open_guest",
        "support_conversations",
        ["guest_token", "topic"],
        unique=True,
        sqlite_where=sa.text("status = 'open' AND guest_token IS NOT NULL"),
        postgresql_where=sa.text("status = 'open' AND guest_token IS NOT NULL"),
    )

    op.create_table(
        "support_messages",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("conversation_id", sa.String(36), sa.ForeignKey("support_conversations.id"), nullable=False),
        sa.Column("sender_kind", sa.String(20), nullable=False),
        sa.Column("sender_ref", sa.String(100), nullable=True),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("file_url", sa.Text(), nullable=True),
        sa.Column("file_name", sa.String(255), nullable=True),
        sa.Column("file_size", sa.Integer(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("read_at", nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_support_messages_conversation_id", "support_messages", ["conversation_id"])
    op.create_index(
        "ix_support_messages_unread", "support_messages", ["conversation_id", "sender_kind", "is_read"]
    )
    op.create_index("ix_support_messages_timeline", "support_messages", ["conversation_id", "created_at"])

    op.create_table(
        "auth_codes",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("code", sa.String(10), nullable=False),
        sa.Column("operator_id", sa.String(64), nullable=False),
        sa.Column("account_id", sa.String(64), nullable=True),
        sa.Column("guest_token", sa.String(100), nullable=True),
        sa.Column("conversation_id", sa.String(36), sa.ForeignKey("support_conversations.id"), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        _timestamp("expires_at"),
        _timestamp("used_at", nullable=True),
        sa.Column("device_info", sa.Text(), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_auth_codes_code", "auth_codes", ["code"])
    op.create_index("ix_auth_codes_status", "auth_codes", ["status"])
    op.create_index(
        "uq_auth_codes_pending_code",
        "auth_codes",
        ["code"],
        unique=True,
        sqlite_where=sa.text("status = 'pending'"),
        postgresql_where=sa.text("status = 'pending'"),
    )


def downgrade() -> None:
    op.drop_table("auth_codes")
    op.drop_table("support_messages")
    op.drop_table("support_conversations")
