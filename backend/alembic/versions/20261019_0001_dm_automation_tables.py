"""Create channel access, automation config, conversation and message tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "channel_access",
        sa.Column("channel_id", sa.String(length=128), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("display_name", sa.String(length=256), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("channel_id"),
    )
    op.create_index("ix_channel_access_owner_id", "channel_access", ["owner_id"], unique=False)

    op.create_table(
        "automation_configs",
        sa.Column("channel_id", sa.String(length=128), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("auto_reply_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("language", sa.String(length=8), nullable=False, server_default="de"),
        sa.Column("tone", sa.String(length=16), nullable=False, server_default="friendly"),
        sa.Column("response_delay_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("system_prompt", sa.Text(), nullable=True),
        sa.Column("brand_name", sa.String(length=128), nullable=True),
        sa.Column("context_window", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("max_response_length", sa.Integer(), nullable=False, server_default="500"),
        sa.Column("category_responses_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("keyword_rules_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("blacklisted_phrases_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("quick_replies_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("operating_hours_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("out_of_office_message", sa.Text(), nullable=True),
        sa.Column("total_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_auto_replied", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("channel_id"),
    )

    op.create_table(
        "dm_conversations",
        sa.Column("conversation_id", sa.String(length=64), nullable=False),
        sa.Column("channel_id", sa.String(length=128), nullable=False),
        sa.Column("external_thread_id", sa.String(length=256), nullable=False),
        sa.Column("participant_external_id", sa.String(length=256), nullable=False),
        sa.Column("participant_display_name", sa.String(length=256), nullable=True),
        sa.Column("participant_handle", sa.String(length=256), nullable=True),
        sa.Column("participant_avatar_url", sa.String(length=2048), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_automated", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("unread_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("conversation_id"),
        sa.UniqueConstraint("channel_id", "external_thread_id", name="uq_dm_conversations_thread"),
    )
    op.create_index("ix_dm_conversations_channel_id", "dm_conversations", ["channel_id"], unique=False)
    op.create_index("ix_dm_conversations_last_message_at", "dm_conversations", ["last_message_at"], unique=False)

    op.create_table(
        "direct_messages",
        sa.Column("message_id", sa.String(length=64), nullable=False),
        sa.Column("conversation_id", sa.String(length=64), nullable=False),
        sa.Column("external_message_id", sa.String(length=256), nullable=True),
        sa.Column("direction", sa.String(length=16), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False, server_default="TEXT"),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("media_url", sa.String(length=2048), nullable=True),
        sa.Column("delivery_status", sa.String(length=16), nullable=False, server_default="RECEIVED"),
        sa.Column("ai_status", sa.String(length=16), nullable=True),
        sa.Column("ai_response", sa.Text(), nullable=True),
        sa.Column("ai_confidence", sa.Float(), nullable=True),
        sa.Column("ai_model", sa.String(length=64), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("replied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("delivery_error", sa.String(length=256), nullable=True),
        sa.Column("delivery_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["conversation_id"], ["dm_conversations.conversation_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("message_id"),
        sa.UniqueConstraint("external_message_id"),
    )
    op.create_index("ix_direct_messages_conversation_id", "direct_messages", ["conversation_id"], unique=False)
    op.create_index("ix_direct_messages_ai_status", "direct_messages", ["ai_status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_direct_messages_ai_status", table_name="direct_messages")
    op.drop_index("ix_direct_messages_conversation_id", table_name="direct_messages")
    op.drop_table("direct_messages")
    op.drop_index("ix_dm_conversations_last_message_at", table_name="dm_conversations")
    op.drop_index("ix_dm_conversations_channel_id", table_name="dm_conversations")
    op.drop_table("dm_conversations")
    op.drop_table("automation_configs")
    op.drop_index("ix_channel_access_owner_id", table_name="channel_access")
    op.drop_table("channel_access")
