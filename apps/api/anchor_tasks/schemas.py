from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, Field, StrictBool, field_validator

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

MembershipRole = Literal["owner", "admin", "member", "viewer"]


def _parse_date(value: object) -> object:
  """Calendar date from YYYY-MM-DD or an ISO timestamp (date part). Empty means null."""
  if value is None or (isinstance(value, date) and not isinstance(value, datetime)):
    return value
  if isinstance(value, datetime):
    return value.date()
  if isinstance(value, str):
    s = value.strip()
    if not s:
      return None
    if _DATE_ONLY_RE.fullmatch(s):
      return date.fromisoformat(s)
    try:
      return datetime.fromisoformat(s.replace("Z", "+00:00")).date()
    except ValueError as e:
      raise ValueError("must be a calendar date (YYYY-MM-DD)") from e
  raise ValueError("must be a calendar date (YYYY-MM-DD)")


class WorkspaceCreateIn(BaseModel):
  name: str = Field(min_length=1, max_length=200)


class WorkspaceOut(BaseModel):
  id: str
  name: str
  role: str | None = None
  created_at: datetime


class MemberAddIn(BaseModel):
  user_id: str | None = None
  email: str | None = None
  role: MembershipRole = "member"


class MemberPatchIn(BaseModel):
  role: MembershipRole


class MemberOut(BaseModel):
  user_id: str
  name: str
  email: str
  handle: str | None = None
  role: str
  joined_at: datetime


class UserOut(BaseModel):
  id: str
  name: str
  email: str
  handle: str | None = None


class BoardCreateIn(BaseModel):
  workspace_id: str
  name: str = Field(min_length=1, max_length=200)
  description: str = ""


class BoardPatchIn(BaseModel):
  name: str | None = Field(default=None, min_length=1, max_length=200)
  description: str | None = None
  archived: StrictBool | None = None


class BoardOut(BaseModel):
  id: str
  workspace_id: str
  name: str
  description: str
  created_at: datetime
  updated_at: datetime
  archived_at: datetime | None = None


class GroupCreateIn(BaseModel):
  name: str = Field(min_length=1, max_length=200)
  order_index: int | None = Field(default=None, ge=0)
  color: str | None = None


class GroupPatchIn(BaseModel):
  name: str | None = Field(default=None, min_length=1, max_length=200)
  order_index: int | None = Field(default=None, ge=0)
  color: str | None = None


class GroupReorderIn(BaseModel):
  group_ids: list[str]


class GroupOut(BaseModel):
  id: str
  board_id: str
  name: str
  color: str | None = None
  order_index: int
  created_at: datetime


class LabelCreateIn(BaseModel):
  label: str = Field(min_length=1, max_length=100)
  color: str = "#c4c4c4ff"
  is_done_state: StrictBool = False


class LabelPatchIn(BaseModel):
  label: str | None = Field(default=None, min_length=1, max_length=100)
  color: str | None = None
  is_done_state: StrictBool | None = None
  order_index: int | None = Field(default=None, ge=0)


class LabelOut(BaseModel):
  id: str
  scope: str
  board_id: str | None = None
  label: str
  color: str
  order_index: int
  is_done_state: bool
  archived_at: datetime | None = None


class ItemCreateIn(BaseModel):
  name: str = Field(min_length=1, max_length=500)
  status: str | None = None
  due_date: date | None = None
  create_if_missing: StrictBool = False

  @field_validator("due_date", mode="before")
  @classmethod
  def _due_date(cls, v: object) -> object:
    return _parse_date(v)


class ItemPatchIn(BaseModel):
  name: str | None = Field(default=None, min_length=1, max_length=500)
  status: str | None = None
  due_date: date | None = None
  needs_attention: StrictBool | None = None
  is_voicemail: StrictBool | None = None
  create_if_missing: StrictBool = False
  expected_version: int | None = None

  @field_validator("due_date", mode="before")
  @classmethod
  def _due_date(cls, v: object) -> object:
    return _parse_date(v)

  def patch_fields(self) -> dict[str, Any]:
    """Only the item fields the caller actually sent."""
    control = {"create_if_missing", "expected_version"}
    return {k: getattr(self, k) for k in self.model_fields_set if k not in control}


class ItemMoveIn(BaseModel):
  group_id: str
  order_index: int | None = Field(default=None, ge=0)


class ItemOut(BaseModel):
  id: str
  board_id: str
  group_id: str
  name: str
  status: str
  status_label_id: str | None = None
  status_color: str | None = None
  status_is_done: bool = False
  due_date: date | None = None
  is_voicemail: bool
  needs_attention: bool
  order_index: int
  version: int
  created_at: datetime
  updated_at: datetime
  archived_at: datetime | None = None


class SubitemCreateIn(BaseModel):
  name: str = Field(min_length=1, max_length=500)
  status: Literal["todo", "done"] = "todo"


class SubitemPatchIn(BaseModel):
  name: str | None = Field(default=None, min_length=1, max_length=500)
  status: Literal["todo", "done"] | None = None
  order_index: int | None = Field(default=None, ge=0)


class SubitemOut(BaseModel):
  id: str
  parent_item_id: str
  name: str
  status: str
  order_index: int
  created_at: datetime


class AssigneeAddIn(BaseModel):
  user_id: str | None = None
  email: str | None = None


class AssigneeOut(BaseModel):
  item_id: str
  user_id: str
  name: str
  email: str
  assigned_at: datetime


class UpdateCreateIn(BaseModel):
  body: str = Field(min_length=1, max_length=10_000)


class UpdateOut(BaseModel):
  id: str
  item_id: str
  author_user_id: str | None = None
  author_name: str | None = None
  body: str
  mentions: list[str]
  is_system: bool
  created_at: datetime


class FileOut(BaseModel):
  id: str
  item_id: str
  file_name: str
  file_url: str
  mime: str
  size_bytes: int
  uploaded_by_user_id: str | None = None
  uploaded_at: datetime


class TimeEntryCreateIn(BaseModel):
  minutes: int = Field(ge=0)
  billable_minutes: int | None = Field(default=None, ge=0)
  is_billable: StrictBool | None = None
  work_category: str | None = Field(default=None, validation_alias=AliasChoices("work_category", "category"))
  description: str | None = Field(default=None, max_length=2000)


class TimeEntryOut(BaseModel):
  id: str
  item_id: str
  user_id: str | None = None
  minutes: int
  billable_minutes: int
  is_billable: bool
  work_category: str
  description: str | None = None
  created_at: datetime


class DateRangeIn(BaseModel):
  start_date: date | None = None
  end_date: date | None = None

  @field_validator("start_date", "end_date", mode="before")
  @classmethod
  def _dates(cls, v: object) -> object:
    return _parse_date(v)


class TimeAggregateIn(DateRangeIn):
  item_ids: list[str]
  work_category: str | None = None
  user_ids: list[str] | None = None


class AutomationCreateIn(BaseModel):
  name: str = Field(min_length=1, max_length=200)
  trigger_type: str
  trigger_config: dict[str, Any] = Field(default_factory=dict)
  condition: dict[str, Any] | None = None
  action_type: str
  action_config: dict[str, Any] = Field(default_factory=dict)
  is_active: StrictBool = True


class AutomationPatchIn(BaseModel):
  name: str | None = Field(default=None, min_length=1, max_length=200)
  trigger_type: str | None = None
  trigger_config: dict[str, Any] | None = None
  condition: dict[str, Any] | None = None
  action_type: str | None = None
  action_config: dict[str, Any] | None = None
  is_active: StrictBool | None = None


class AutomationOut(BaseModel):
  id: str
  board_id: str
  name: str
  trigger_type: str
  trigger_config: dict[str, Any]
  condition: dict[str, Any] | None = None
  action_type: str
  action_config: dict[str, Any]
  is_active: bool
  created_by: str | None = None
  created_at: datetime
  updated_at: datetime


class AutomationLogOut(BaseModel):
  id: str
  rule_id: str
  item_id: str | None = None
  fired_at: datetime
  outcome: str
  detail: str


class ReportIn(DateRangeIn):
  board_ids: list[str] = Field(default_factory=list)


class BillingReportIn(ReportIn):
  work_category: str | None = None
  user_ids: list[str] | None = None


class NotificationOut(BaseModel):
  id: str
  title: str
  body: str
  link_url: str | None = None
  status: str
  created_at: datetime
  read_at: datetime | None = None
