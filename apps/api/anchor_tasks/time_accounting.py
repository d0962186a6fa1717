from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_tasks import store
from anchor_tasks.editing import EditSession
from anchor_tasks.errors import Invariant
from anchor_tasks.models import Board, Item, TimeEntry

DEFAULT_CATEGORY = "Other"
CATEGORY_LIMIT = 100


@dataclass(frozen=True)
class DateWindow:
  start: datetime | None
  end: datetime | None  # exclusive

  def contains(self, ts: datetime) -> bool:
    return (self.start is None or ts >= self.start) and (self.end is None or ts < self.end)


def date_window(start_date: date | None, end_date: date | None) -> DateWindow:
  """Whole UTC days: [start_date 00:00, end_date + 1 day 00:00)."""
  if start_date and end_date and start_date > end_date:
    raise Invariant("start_date must not be after end_date", details={"start_date": start_date, "end_date": end_date})
  start = datetime.combine(start_date, time.min, tzinfo=timezone.utc) if start_date else None
  end = datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=timezone.utc) if end_date else None
  return DateWindow(start=start, end=end)


def apply_window(q, column, window: DateWindow):
  if window.start is not None:
    q = q.where(column >= window.start)
  if window.end is not None:
    q = q.where(column < window.end)
  return q


def normalize_category(value: str | None) -> str:
  cat = " ".join((value or "").split())
  if not cat:
    return DEFAULT_CATEGORY
  if len(cat) > CATEGORY_LIMIT:
    raise Invariant("work_category is too long", details={"limit": CATEGORY_LIMIT})
  return cat


def billable_split(minutes: int, billable_minutes: int | None, is_billable: bool | None) -> tuple[int, bool]:
  """Return (billable_minutes, is_billable) with 0 <= billable <= minutes and is_billable == (billable == minutes)."""
  if minutes is None or minutes < 0:
    raise Invariant("minutes must be >= 0", details={"minutes": minutes})
  if billable_minutes is not None:
    if billable_minutes < 0 or billable_minutes > minutes:
      raise Invariant("billable_minutes must be between 0 and minutes", details={"minutes": minutes, "billable_minutes": billable_minutes})
    if is_billable is False and billable_minutes > 0:
      raise Invariant("billable_minutes given for a non-billable entry")
    if is_billable is True and billable_minutes != minutes:
      raise Invariant("a billable entry bills all of its minutes", details={"minutes": minutes, "billable_minutes": billable_minutes})
    billable = billable_minutes
  else:
    billable = minutes if is_billable is not False else 0
  return billable, billable == minutes


async def log_time(
  session: EditSession,
  board: Board,
  item: Item,
  *,
  minutes: int,
  billable_minutes: int | None = None,
  is_billable: bool | None = None,
  work_category: str | None = None,
  description: str | None = None,
) -> TimeEntry:
  billable, flag = billable_split(minutes, billable_minutes, is_billable)
  entry = TimeEntry(
    item_id=item.id,
    user_id=session.actor.id,
    minutes=minutes,
    billable_minutes=billable,
    is_billable=flag,
    work_category=normalize_category(work_category),
    description=(description or "").strip() or None,
  )
  await store.create(session.db, entry)
  await session.emit(
    "time_entry.created",
    entity="TimeEntry",
    entity_id=entry.id,
    board=board,
    item_id=item.id,
    after={"minutes": minutes, "billable_minutes": billable, "work_category": entry.work_category},
  )
  return entry


@dataclass
class CategoryTotals:
  work_category: str
  total_minutes: int = 0
  billable_minutes: int = 0
  entry_count: int = 0


@dataclass
class TimeAggregate:
  total_minutes: int = 0
  billable_minutes: int = 0
  entry_count: int = 0
  by_category: list[CategoryTotals] = field(default_factory=list)

  def as_dict(self) -> dict[str, Any]:
    return {
      "total_minutes": self.total_minutes,
      "billable_minutes": self.billable_minutes,
      "entry_count": self.entry_count,
      "by_category": [c.__dict__ for c in self.by_category],
    }


async def aggregate(
  db: AsyncSession,
  *,
  item_ids: list[str],
  window: DateWindow | None = None,
  work_category: str | None = None,
  user_ids: list[str] | None = None,
) -> TimeAggregate:
  if not item_ids:
    return TimeAggregate()
  q = (
    select(
      TimeEntry.work_category,
      func.coalesce(func.sum(TimeEntry.minutes), 0),
      func.coalesce(func.sum(TimeEntry.billable_minutes), 0),
      func.count(TimeEntry.id),
    )
    .where(TimeEntry.item_id.in_(item_ids))
    .group_by(TimeEntry.work_category)
    .order_by(TimeEntry.work_category.asc())
  )
  if window is not None:
    q = apply_window(q, TimeEntry.created_at, window)
  if work_category:
    q = q.where(func.lower(TimeEntry.work_category) == normalize_category(work_category).lower())
  if user_ids:
    q = q.where(TimeEntry.user_id.in_(user_ids))
  res = await db.execute(q)
  out = TimeAggregate()
  for cat, total, billable, count in res.all():
    out.by_category.append(CategoryTotals(work_category=cat, total_minutes=int(total), billable_minutes=int(billable), entry_count=int(count)))
    out.total_minutes += int(total)
    out.billable_minutes += int(billable)
    out.entry_count += int(count)
  return out


async def totals_by_item(db: AsyncSession, item_ids: list[str]) -> dict[str, dict[str, int]]:
  if not item_ids:
    return {}
  res = await db.execute(
    select(
      TimeEntry.item_id,
      func.coalesce(func.sum(TimeEntry.minutes), 0),
      func.coalesce(func.sum(TimeEntry.billable_minutes), 0),
    )
    .where(TimeEntry.item_id.in_(item_ids))
    .group_by(TimeEntry.item_id)
  )
  return {row[0]: {"minutes": int(row[1]), "billable_minutes": int(row[2])} for row in res.all()}


async def list_entries(db: AsyncSession, item_id: str) -> list[TimeEntry]:
  res = await db.execute(select(TimeEntry).where(TimeEntry.item_id == item_id).order_by(TimeEntry.created_at.asc(), TimeEntry.id.asc()))
  return list(res.scalars().all())
