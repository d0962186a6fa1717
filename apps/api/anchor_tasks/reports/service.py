from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_tasks.audit import items_touched
from anchor_tasks.labels import BUCKETS, canonical_bucket, load_catalog
from anchor_tasks.models import Board, Group, Item, TimeEntry, Update, User
from anchor_tasks.time_accounting import DateWindow, apply_window

UNCATEGORIZED = "Uncategorized"


async def _board_row(db: AsyncSession, b: Board, window: DateWindow) -> dict[str, Any]:
  catalog = await load_catalog(db, b.id)
  ires = await db.execute(select(Item).where(Item.board_id == b.id, Item.archived_at.is_(None)))
  items = list(ires.scalars().all())
  counts = {bucket: 0 for bucket in BUCKETS}
  flagged = 0
  for it in items:
    counts[canonical_bucket(it.status, catalog.resolve_for_read(it))] += 1
    if it.needs_attention:
      flagged += 1

  board_items = select(Item.id).where(Item.board_id == b.id)
  uq = apply_window(select(func.count(Update.id)).where(Update.item_id.in_(board_items)), Update.created_at, window)
  tq = apply_window(
    select(func.coalesce(func.sum(TimeEntry.minutes), 0), func.coalesce(func.sum(TimeEntry.billable_minutes), 0)).where(
      TimeEntry.item_id.in_(board_items)
    ),
    TimeEntry.created_at,
    window,
  )
  updates = int((await db.execute(uq)).scalar_one() or 0)
  minutes, billable = (await db.execute(tq)).one()
  touched = await items_touched(db, b.id, start=window.start, end=window.end)
  return {
    "board_id": b.id,
    "board_name": b.name,
    "workspace_id": b.workspace_id,
    "total_items": len(items),
    "status_counts": counts,
    "needs_attention_flagged": flagged,
    "updates_in_range": updates,
    "time_minutes_in_range": int(minutes or 0),
    "billable_minutes_in_range": int(billable or 0),
    "items_updated_in_range": touched,
  }


async def board_report_rows(db: AsyncSession, boards: list[Board], window: DateWindow) -> list[dict[str, Any]]:
  """One counter row per board, in the order given."""
  return [await _board_row(db, b, window) for b in boards]


@dataclass
class BillingEntry:
  id: str
  created_at: datetime
  user_id: str | None
  user_name: str | None
  minutes: int
  billable_minutes: int
  description: str | None


@dataclass
class BillingRow:
  board_id: str
  board_name: str
  group_name: str
  item_id: str
  item_name: str
  category: str
  total_minutes: int = 0
  billable_minutes: int = 0
  entries: list[BillingEntry] = field(default_factory=list)

  @property
  def entry_count(self) -> int:
    return len(self.entries)

  def as_dict(self) -> dict[str, Any]:
    return {
      "board_id": self.board_id,
      "board_name": self.board_name,
      "group_name": self.group_name,
      "item_id": self.item_id,
      "item_name": self.item_name,
      "category": self.category,
      "total_minutes": self.total_minutes,
      "billable_minutes": self.billable_minutes,
      "entry_count": self.entry_count,
      "entries": [e.__dict__ for e in self.entries],
    }


def category_sort_key(category: str) -> tuple[int, str]:
  return (1 if category == UNCATEGORIZED else 0, category.lower())


async def billing_rows(
  db: AsyncSession,
  boards: list[Board],
  window: DateWindow,
  *,
  work_category: str | None = None,
  user_ids: list[str] | None = None,
) -> list[BillingRow]:
  """
  Per-item, per-category time rollups.

  Sorted by category (Uncategorized last), then item name; entries inside a
  row are in created_at order.
  """
  if not boards:
    return []
  board_by_id = {b.id: b for b in boards}
  q = (
    select(TimeEntry, Item, Group, User.name)
    .join(Item, Item.id == TimeEntry.item_id)
    .join(Group, Group.id == Item.group_id)
    .outerjoin(User, User.id == TimeEntry.user_id)
    .where(Item.board_id.in_(list(board_by_id)))
    .order_by(TimeEntry.created_at.asc(), TimeEntry.id.asc())
  )
  q = apply_window(q, TimeEntry.created_at, window)
  if work_category:
    q = q.where(func.lower(TimeEntry.work_category) == work_category.strip().lower())
  if user_ids:
    q = q.where(TimeEntry.user_id.in_(user_ids))
  res = await db.execute(q)

  rows: dict[tuple[str, str], BillingRow] = {}
  for entry, it, g, user_name in res.all():
    category = (entry.work_category or "").strip() or UNCATEGORIZED
    key = (it.id, category)
    row = rows.get(key)
    if row is None:
      b = board_by_id[it.board_id]
      row = rows[key] = BillingRow(
        board_id=b.id, board_name=b.name, group_name=g.name, item_id=it.id, item_name=it.name, category=category
      )
    row.total_minutes += entry.minutes
    row.billable_minutes += entry.billable_minutes
    row.entries.append(
      BillingEntry(
        id=entry.id,
        created_at=entry.created_at,
        user_id=entry.user_id,
        user_name=user_name,
        minutes=entry.minutes,
        billable_minutes=entry.billable_minutes,
        description=entry.description,
      )
    )
  return sorted(rows.values(), key=lambda r: (category_sort_key(r.category), r.item_name.lower(), r.item_id))


def category_rollup(rows: list[BillingRow]) -> list[dict[str, Any]]:
  acc: dict[str, dict[str, Any]] = defaultdict(lambda: {"total_minutes": 0, "billable_minutes": 0, "entry_count": 0, "item_count": 0})
  for r in rows:
    c = acc[r.category]
    c["total_minutes"] += r.total_minutes
    c["billable_minutes"] += r.billable_minutes
    c["entry_count"] += r.entry_count
    c["item_count"] += 1
  return [{"category": cat, **acc[cat]} for cat in sorted(acc, key=category_sort_key)]
