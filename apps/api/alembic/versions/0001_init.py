"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

ID = sa.String(36)
TS = sa.DateTime(timezone=True)


def upgrade() -> None:
  op.create_table(
    "users",
    sa.Column("id", ID, primary_key=True),
    sa.Column("email", sa.String(), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("handle", sa.String(), nullable=True),
    sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    sa.Column("created_at", TS, nullable=False),
  )
  op.create_index("ix_users_email", "users", ["email"], unique=True)
  op.create_index("ix_users_handle", "users", ["handle"], unique=False)

  op.create_table(
    "api_tokens",
    sa.Column("id", ID, primary_key=True),
    sa.Column("user_id", ID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("token_hash", sa.String(), nullable=False),
    sa.Column("token_prefix", sa.String(), nullable=False),
    sa.Column("created_at", TS, nullable=False),
    sa.Column("last_used_at", TS, nullable=True),
    sa.Column("revoked_at", TS, nullable=True),
  )
  op.create_index("ix_api_tokens_user_id", "api_tokens", ["user_id"], unique=False)
  op.create_index("ix_api_tokens_token_hash", "api_tokens", ["token_hash"], unique=True)

  op.create_table(
    "workspaces",
    sa.Column("id", ID, primary_key=True),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("created_at", TS, nullable=False),
  )

  op.create_table(
    "workspace_members",
    sa.Column("id", ID, primary_key=True),
    sa.Column("workspace_id", ID, sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
    sa.Column("user_id", ID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("role", sa.String(), nullable=False),
    sa.Column("created_at", TS, nullable=False),
    sa.UniqueConstraint("workspace_id", "user_id", name="ux_workspace_members_workspace_user"),
  )
  op.create_index("ix_workspace_members_workspace_id", "workspace_members", ["workspace_id"], unique=False)
  op.create_index("ix_workspace_members_user_id", "workspace_members", ["user_id"], unique=False)

  op.create_table(
    "boards",
    sa.Column("id", ID, primary_key=True),
    sa.Column("workspace_id", ID, sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("description", sa.Text(), nullable=False, server_default=""),
    sa.Column("created_at", TS, nullable=False),
    sa.Column("updated_at", TS, nullable=False),
    sa.Column("archived_at", TS, nullable=True),
  )
  op.create_index("ix_boards_workspace_id", "boards", ["workspace_id"], unique=False)

  op.create_table(
    "groups",
    sa.Column("id", ID, primary_key=True),
    sa.Column("board_id", ID, sa.ForeignKey("boards.id", ondelete="CASCADE"), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("color", sa.String(), nullable=True),
    sa.Column("order_index", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("created_at", TS, nullable=False),
  )
  op.create_index("ix_groups_board_id", "groups", ["board_id"], unique=False)

  op.create_table(
    "status_labels",
    sa.Column("id", ID, primary_key=True),
    sa.Column("scope", sa.String(), nullable=False, server_default="board"),
    sa.Column("board_id", ID, sa.ForeignKey("boards.id", ondelete="CASCADE"), nullable=True),
    sa.Column("label", sa.String(), nullable=False),
    sa.Column("color", sa.String(), nullable=False),
    sa.Column("order_index", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("is_done_state", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    sa.Column("created_at", TS, nullable=False),
    sa.Column("archived_at", TS, nullable=True),
    sa.UniqueConstraint("scope", "board_id", "label", name="ux_status_labels_scope_board_label"),
  )
  op.create_index("ix_status_labels_board_id", "status_labels", ["board_id"], unique=False)

  op.create_table(
    "items",
    sa.Column("id", ID, primary_key=True),
    sa.Column("board_id", ID, sa.ForeignKey("boards.id", ondelete="CASCADE"), nullable=False),
    sa.Column("group_id", ID, sa.ForeignKey("groups.id", ondelete="CASCADE"), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("status_label_id", ID, sa.ForeignKey("status_labels.id", ondelete="SET NULL"), nullable=True),
    sa.Column("due_date", sa.Date(), nullable=True),
    sa.Column("is_voicemail", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    sa.Column("needs_attention", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    sa.Column("order_index", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("created_by", ID, sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
    sa.Column("created_at", TS, nullable=False),
    sa.Column("updated_at", TS, nullable=False),
    sa.Column("archived_at", TS, nullable=True),
  )
  op.create_index("ix_items_board_id", "items", ["board_id"], unique=False)
  op.create_index("ix_items_group_id", "items", ["group_id"], unique=False)
  op.create_index("ix_items_archived_at", "items", ["archived_at"], unique=False)

  op.create_table(
    "subitems",
    sa.Column("id", ID, primary_key=True),
    sa.Column("parent_item_id", ID, sa.ForeignKey("items.id", ondelete="CASCADE"), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("status", sa.String(), nullable=False, server_default="todo"),
    sa.Column("order_index", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("created_at", TS, nullable=False),
  )
  op.create_index("ix_subitems_parent_item_id", "subitems", ["parent_item_id"], unique=False)

  op.create_table(
    "assignees",
    sa.Column("item_id", ID, sa.ForeignKey("items.id", ondelete="CASCADE"), primary_key=True),
    sa.Column("user_id", ID, sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    sa.Column("assigned_at", TS, nullable=False),
  )
  op.create_index("ix_assignees_user_id", "assignees", ["user_id"], unique=False)

  op.create_table(
    "updates",
    sa.Column("id", ID, primary_key=True),
    sa.Column("item_id", ID, sa.ForeignKey("items.id", ondelete="CASCADE"), nullable=False),
    sa.Column("author_user_id", ID, sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
    sa.Column("body", sa.Text(), nullable=False),
    sa.Column("mentions", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
    sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    sa.Column("created_at", TS, nullable=False),
  )
  op.create_index("ix_updates_item_id", "updates", ["item_id"], unique=False)
  op.create_index("ix_updates_created_at", "updates", ["created_at"], unique=False)

  op.create_table(
    "item_files",
    sa.Column("id", ID, primary_key=True),
    sa.Column("item_id", ID, sa.ForeignKey("items.id", ondelete="CASCADE"), nullable=False),
    sa.Column("file_name", sa.String(), nullable=False),
    sa.Column("file_url", sa.String(), nullable=False),
    sa.Column("path", sa.String(), nullable=False),
    sa.Column("mime", sa.String(), nullable=False),
    sa.Column("size_bytes", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("uploaded_by_user_id", ID, sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
    sa.Column("uploaded_at", TS, nullable=False),
  )
  op.create_index("ix_item_files_item_id", "item_files", ["item_id"], unique=False)

  op.create_table(
    "time_entries",
    sa.Column("id", ID, primary_key=True),
    sa.Column("item_id", ID, sa.ForeignKey("items.id", ondelete="CASCADE"), nullable=False),
    sa.Column("user_id", ID, sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
    sa.Column("minutes", sa.Integer(), nullable=False),
    sa.Column("billable_minutes", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("is_billable", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    sa.Column("work_category", sa.String(), nullable=False, server_default="Other"),
    sa.Column("description", sa.Text(), nullable=True),
    sa.Column("created_at", TS, nullable=False),
    sa.CheckConstraint("billable_minutes >= 0 AND billable_minutes <= minutes", name="ck_time_entries_billable_range"),
  )
  op.create_index("ix_time_entries_item_id", "time_entries", ["item_id"], unique=False)
  op.create_index("ix_time_entries_user_id", "time_entries", ["user_id"], unique=False)
  op.create_index("ix_time_entries_created_at", "time_entries", ["created_at"], unique=False)

  op.create_table(
    "automation_rules",
    sa.Column("id", ID, primary_key=True),
    sa.Column("board_id", ID, sa.ForeignKey("boards.id", ondelete="CASCADE"), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("trigger_type", sa.String(), nullable=False),
    sa.Column("trigger_config", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
    sa.Column("condition", postgresql.JSONB(), nullable=True),
    sa.Column("action_type", sa.String(), nullable=False),
    sa.Column("action_config", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
    sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    sa.Column("created_by", ID, sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
    sa.Column("created_at", TS, nullable=False),
    sa.Column("updated_at", TS, nullable=False),
  )
  op.create_index("ix_automation_rules_board_id", "automation_rules", ["board_id"], unique=False)

  op.create_table(
    "automation_logs",
    sa.Column("id", ID, primary_key=True),
    sa.Column("rule_id", ID, sa.ForeignKey("automation_rules.id", ondelete="CASCADE"), nullable=False),
    sa.Column("item_id", ID, nullable=True),
    sa.Column("outcome", sa.String(), nullable=False),
    sa.Column("detail", sa.Text(), nullable=False, server_default=""),
    sa.Column("fingerprint", sa.String(), nullable=True),
    sa.Column("fired_at", TS, nullable=False),
  )
  op.create_index("ix_automation_logs_rule_id", "automation_logs", ["rule_id"], unique=False)
  op.create_index("ix_automation_logs_item_id", "automation_logs", ["item_id"], unique=False)
  op.create_index("ix_automation_logs_fingerprint", "automation_logs", ["fingerprint"], unique=False)

  op.create_table(
    "notifications",
    sa.Column("id", ID, primary_key=True),
    sa.Column("user_id", ID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("body", sa.Text(), nullable=False, server_default=""),
    sa.Column("link_url", sa.String(), nullable=True),
    sa.Column("status", sa.String(), nullable=False, server_default="unread"),
    sa.Column("dedupe_key", sa.String(), nullable=True),
    sa.Column("delivered", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    sa.Column("created_at", TS, nullable=False),
    sa.Column("read_at", TS, nullable=True),
  )
  op.create_index("ix_notifications_user_id", "notifications", ["user_id"], unique=False)
  op.create_index("ix_notifications_dedupe_key", "notifications", ["dedupe_key"], unique=False)

  op.create_table(
    "audit_events",
    sa.Column("id", ID, primary_key=True),
    sa.Column("workspace_id", ID, nullable=True),
    sa.Column("board_id", ID, nullable=True),
    sa.Column("item_id", ID, nullable=True),
    sa.Column("actor_id", ID, nullable=True),
    sa.Column("event_type", sa.String(), nullable=False),
    sa.Column("entity_type", sa.String(), nullable=False),
    sa.Column("entity_id", sa.String(), nullable=True),
    sa.Column("payload", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
    sa.Column("created_at", TS, nullable=False),
  )
  op.create_index("ix_audit_events_workspace_id", "audit_events", ["workspace_id"], unique=False)
  op.create_index("ix_audit_events_board_id", "audit_events", ["board_id"], unique=False)
  op.create_index("ix_audit_events_item_id", "audit_events", ["item_id"], unique=False)
  op.create_index("ix_audit_events_created_at", "audit_events", ["created_at"], unique=False)


def downgrade() -> None:
  for table in (
    "audit_events",
    "notifications",
    "automation_logs",
    "automation_rules",
    "time_entries",
    "item_files",
    "updates",
    "assignees",
    "subitems",
    "items",
    "status_labels",
    "groups",
    "boards",
    "workspace_members",
    "workspaces",
    "api_tokens",
    "users",
  ):
    op.drop_table(table)
