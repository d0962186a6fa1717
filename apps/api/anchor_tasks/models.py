from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, CheckConstraint, Date, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
  return datetime.now(timezone.utc)


def new_id() -> str:
  return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
  """Timezone-aware timestamps on every backend (SQLite drops tzinfo)."""

  impl = DateTime(timezone=True)
  cache_ok = True

  def process_bind_param(self, value, dialect):
    if value is None:
      return None
    if value.tzinfo is None:
      value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    if dialect.name == "sqlite":
      return value.replace(tzinfo=None)
    return value

  def process_result_value(self, value, dialect):
    if value is None:
      return None
    if value.tzinfo is None:
      return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


JSONType = JSON().with_variant(JSONB(), "postgresql")
IdType = String(36)


class Base(DeclarativeBase):
  pass


class User(Base):
  __tablename__ = "users"

  id: Mapped[str] = mapped_column(IdType, primary_key=True, default=new_id)
  email: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  handle: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class ApiToken(Base):
  __tablename__ = "api_tokens"

  id: Mapped[str] = mapped_column(IdType, primary_key=True, default=new_id)
  user_id: Mapped[str] = mapped_column(IdType, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  token_hash: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
  token_prefix: Mapped[str] = mapped_column(String, nullable=False)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
  last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
  revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class Workspace(Base):
  __tablename__ = "workspaces"

  id: Mapped[str] = mapped_column(IdType, primary_key=True, default=new_id)
  name: Mapped[str] = mapped_column(String, nullable=False)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class WorkspaceMember(Base):
  __tablename__ = "workspace_members"
  __table_args__ = (UniqueConstraint("workspace_id", "user_id", name="ux_workspace_members_workspace_user"),)

  id: Mapped[str] = mapped_column(IdType, primary_key=True, default=new_id)
  workspace_id: Mapped[str] = mapped_column(IdType, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
  user_id: Mapped[str] = mapped_column(IdType, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
  role: Mapped[str] = mapped_column(String, nullable=False, default="member")  # owner | admin | member | viewer
  created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class Board(Base):
  __tablename__ = "boards"

  id: Mapped[str] = mapped_column(IdType, primary_key=True, default=new_id)
  workspace_id: Mapped[str] = mapped_column(IdType, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  description: Mapped[str] = mapped_column(Text, nullable=False, default="")
  created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)
  archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class Group(Base):
  __tablename__ = "groups"

  id: Mapped[str] = mapped_column(IdType, primary_key=True, default=new_id)
  board_id: Mapped[str] = mapped_column(IdType, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  color: Mapped[str | None] = mapped_column(String, nullable=True)
  order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class StatusLabel(Base):
  __tablename__ = "status_labels"
  __table_args__ = (UniqueConstraint("scope", "board_id", "label", name="ux_status_labels_scope_board_label"),)

  id: Mapped[str] = mapped_column(IdType, primary_key=True, default=new_id)
  scope: Mapped[str] = mapped_column(String, nullable=False, default="board")  # global | board
  board_id: Mapped[str | None] = mapped_column(IdType, ForeignKey("boards.id", ondelete="CASCADE"), nullable=True, index=True)
  label: Mapped[str] = mapped_column(String, nullable=False)
  color: Mapped[str] = mapped_column(String, nullable=False, default="#808080ff")
  order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  is_done_state: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
  archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class Item(Base):
  __tablename__ = "items"

  id: Mapped[str] = mapped_column(IdType, primary_key=True, default=new_id)
  board_id: Mapped[str] = mapped_column(IdType, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
  group_id: Mapped[str] = mapped_column(IdType, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, default="To Do")
  status_label_id: Mapped[str | None] = mapped_column(IdType, ForeignKey("status_labels.id", ondelete="SET NULL"), nullable=True)
  due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
  is_voicemail: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  needs_attention: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  created_by: Mapped[str | None] = mapped_column(IdType, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)
  archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)


class Subitem(Base):
  __tablename__ = "subitems"

  id: Mapped[str] = mapped_column(IdType, primary_key=True, default=new_id)
  parent_item_id: Mapped[str] = mapped_column(IdType, ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, default="todo")  # todo | done
  order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class Assignee(Base):
  __tablename__ = "assignees"

  item_id: Mapped[str] = mapped_column(IdType, ForeignKey("items.id", ondelete="CASCADE"), primary_key=True)
  user_id: Mapped[str] = mapped_column(IdType, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, index=True)
  assigned_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class Update(Base):
  __tablename__ = "updates"

  id: Mapped[str] = mapped_column(IdType, primary_key=True, default=new_id)
  item_id: Mapped[str] = mapped_column(IdType, ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True)
  author_user_id: Mapped[str | None] = mapped_column(IdType, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
  body: Mapped[str] = mapped_column(Text, nullable=False)
  mentions: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
  is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False, index=True)


class ItemFile(Base):
  __tablename__ = "item_files"

  id: Mapped[str] = mapped_column(IdType, primary_key=True, default=new_id)
  item_id: Mapped[str] = mapped_column(IdType, ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True)
  file_name: Mapped[str] = mapped_column(String, nullable=False)
  file_url: Mapped[str] = mapped_column(String, nullable=False)
  path: Mapped[str] = mapped_column(String, nullable=False)
  mime: Mapped[str] = mapped_column(String, nullable=False)
  size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  uploaded_by_user_id: Mapped[str | None] = mapped_column(IdType, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
  uploaded_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class TimeEntry(Base):
  __tablename__ = "time_entries"
  __table_args__ = (CheckConstraint("billable_minutes >= 0 AND billable_minutes <= minutes", name="ck_time_entries_billable_range"),)

  id: Mapped[str] = mapped_column(IdType, primary_key=True, default=new_id)
  item_id: Mapped[str] = mapped_column(IdType, ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True)
  user_id: Mapped[str | None] = mapped_column(IdType, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
  minutes: Mapped[int] = mapped_column(Integer, nullable=False)
  billable_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  is_billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
  work_category: Mapped[str] = mapped_column(String, nullable=False, default="Other")
  description: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False, index=True)


class AutomationRule(Base):
  __tablename__ = "automation_rules"

  id: Mapped[str] = mapped_column(IdType, primary_key=True, default=new_id)
  board_id: Mapped[str] = mapped_column(IdType, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  trigger_type: Mapped[str] = mapped_column(String, nullable=False)
  trigger_config: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
  condition: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
  action_type: Mapped[str] = mapped_column(String, nullable=False)
  action_config: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
  is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
  created_by: Mapped[str | None] = mapped_column(IdType, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class AutomationLog(Base):
  __tablename__ = "automation_logs"

  id: Mapped[str] = mapped_column(IdType, primary_key=True, default=new_id)
  rule_id: Mapped[str] = mapped_column(IdType, ForeignKey("automation_rules.id", ondelete="CASCADE"), nullable=False, index=True)
  item_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
  outcome: Mapped[str] = mapped_column(String, nullable=False)  # delivered | skipped | failed
  detail: Mapped[str] = mapped_column(Text, nullable=False, default="")
  fingerprint: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  fired_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class Notification(Base):
  __tablename__ = "notifications"

  id: Mapped[str] = mapped_column(IdType, primary_key=True, default=new_id)
  user_id: Mapped[str] = mapped_column(IdType, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
  title: Mapped[str] = mapped_column(String, nullable=False)
  body: Mapped[str] = mapped_column(Text, nullable=False, default="")
  link_url: Mapped[str | None] = mapped_column(String, nullable=True)
  status: Mapped[str] = mapped_column(String, nullable=False, default="unread")  # unread | read
  dedupe_key: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  delivered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
  read_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class AuditEvent(Base):
  __tablename__ = "audit_events"

  id: Mapped[str] = mapped_column(IdType, primary_key=True, default=new_id)
  workspace_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
  board_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
  item_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
  actor_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
  event_type: Mapped[str] = mapped_column(String, nullable=False)
  entity_type: Mapped[str] = mapped_column(String, nullable=False)
  entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
  payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False, index=True)
