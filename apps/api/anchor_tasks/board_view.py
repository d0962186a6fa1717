from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_tasks import store
from anchor_tasks.labels import Catalog, load_catalog
from anchor_tasks.models import Assignee, Board, Group, Item, StatusLabel, Update, User, WorkspaceMember
from anchor_tasks.time_accounting import totals_by_item

logger = logging.getLogger(__name__)


async def begin_snapshot(db: AsyncSession) -> None:
  """Pin the next transaction to one snapshot on PostgreSQL. Call before the first read."""
  if db.bind.dialect.name == "postgresql" and not db.in_transaction():
    await db.connection(execution_options={"isolation_level": "REPEATABLE READ"})


def board_out(b: Board) -> dict[str, Any]:
  return {
    "id": b.id,
    "workspace_id": b.workspace_id,
    "name": b.name,
    "description": b.description,
    "created_at": b.created_at,
    "updated_at": b.updated_at,
    "archived_at": b.archived_at,
  }


def group_out(g: Group) -> dict[str, Any]:
  return {"id": g.id, "board_id": g.board_id, "name": g.name, "color": g.color, "order_index": g.order_index, "created_at": g.created_at}


def label_out(lbl: StatusLabel) -> dict[str, Any]:
  return {
    "id": lbl.id,
    "scope": lbl.scope,
    "board_id": lbl.board_id,
    "label": lbl.label,
    "color": lbl.color,
    "order_index": lbl.order_index,
    "is_done_state": lbl.is_done_state,
    "archived_at": lbl.archived_at,
  }


def item_out(it: Item, catalog: Catalog) -> dict[str, Any]:
  lbl = catalog.resolve_for_read(it)
  return {
    "id": it.id,
    "board_id": it.board_id,
    "group_id": it.group_id,
    "name": it.name,
    "status": lbl.label if lbl else it.status,
    "status_label_id": lbl.id if lbl else None,
    "status_color": lbl.color if lbl else None,
    "status_is_done": bool(lbl.is_done_state) if lbl else False,
    "due_date": it.due_date,
    "is_voicemail": it.is_voicemail,
    "needs_attention": it.needs_attention,
    "order_index": it.order_index,
    "version": it.version,
    "created_at": it.created_at,
    "updated_at": it.updated_at,
    "archived_at": it.archived_at,
  }


async def _side_aggregate(
  db: AsyncSession,
  name: str,
  compute: Callable[[], Awaitable[dict[str, Any]]],
  unavailable: list[str],
) -> dict[str, Any] | None:
  try:
    if db.bind.dialect.name == "postgresql":
      # A failed statement must not poison the snapshot transaction.
      async with db.begin_nested():
        return await compute()
    return await compute()
  except SQLAlchemyError:
    logger.warning("board view aggregate %s unavailable", name, exc_info=True)
    unavailable.append(name)
    return None


async def update_counts(db: AsyncSession, item_ids: list[str]) -> dict[str, int]:
  if not item_ids:
    return {}
  res = await db.execute(select(Update.item_id, func.count(Update.id)).where(Update.item_id.in_(item_ids)).group_by(Update.item_id))
  return {row[0]: int(row[1]) for row in res.all()}


async def workspace_members(db: AsyncSession, workspace_id: str) -> list[dict[str, Any]]:
  res = await db.execute(
    select(WorkspaceMember, User)
    .join(User, User.id == WorkspaceMember.user_id)
    .where(WorkspaceMember.workspace_id == workspace_id)
    .order_by(User.name.asc(), User.email.asc())
  )
  return [
    {"user_id": u.id, "name": u.name, "email": u.email, "handle": u.handle, "role": m.role, "joined_at": m.created_at}
    for m, u in res.all()
  ]


async def project(db: AsyncSession, board: Board, *, search: str | None = None, include_archived: bool = False) -> dict[str, Any]:
  """Materialize the board view snapshot."""
  catalog = await load_catalog(db, board.id)
  groups = await store.list_ordered(db, Group, board.id)

  q = select(Item).where(Item.board_id == board.id)
  if not include_archived:
    q = q.where(Item.archived_at.is_(None))
  res = await db.execute(q.order_by(Item.order_index.asc(), Item.created_at.asc(), Item.id.asc()))
  items = list(res.scalars().all())
  needle = (search or "").strip().lower()
  if needle:
    items = [it for it in items if needle in it.name.lower()]

  items_by_group: dict[str, list[dict[str, Any]]] = {g.id: [] for g in groups}
  for it in items:
    items_by_group.setdefault(it.group_id, []).append(item_out(it, catalog))
  ordered_items = [row for g in groups for row in items_by_group[g.id]]
  item_ids = [row["id"] for row in ordered_items]

  assignees_by_item: dict[str, list[dict[str, Any]]] = {i: [] for i in item_ids}
  if item_ids:
    ares = await db.execute(
      select(Assignee, User)
      .join(User, User.id == Assignee.user_id)
      .where(Assignee.item_id.in_(item_ids))
      .order_by(Assignee.assigned_at.asc(), User.id.asc())
    )
    for a, u in ares.all():
      assignees_by_item[a.item_id].append({"user_id": u.id, "name": u.name, "email": u.email, "assigned_at": a.assigned_at})

  unavailable: list[str] = []
  counts = await _side_aggregate(db, "update_counts_by_item", lambda: update_counts(db, item_ids), unavailable)
  times = await _side_aggregate(db, "time_totals_by_item", lambda: totals_by_item(db, item_ids), unavailable)

  totals: dict[str, Any] = {"groups": len(groups), "items": len(item_ids)}
  if counts is not None:
    counts = {i: counts.get(i, 0) for i in item_ids}
    totals["updates"] = sum(counts.values())
  if times is not None:
    times = {i: times.get(i, {"minutes": 0, "billable_minutes": 0}) for i in item_ids}
    totals["minutes"] = sum(t["minutes"] for t in times.values())
    totals["billable_minutes"] = sum(t["billable_minutes"] for t in times.values())

  return {
    "board": board_out(board),
    "groups": [group_out(g) for g in groups],
    "items": ordered_items,
    "items_by_group": items_by_group,
    "assignees_by_item": assignees_by_item,
    "update_counts_by_item": counts,
    "time_totals_by_item": times,
    "label_catalog": [label_out(lbl) for lbl in catalog.labels],
    "workspace_members": await workspace_members(db, board.workspace_id),
    "totals": totals,
    "unavailable": unavailable,
    "search": needle or None,
  }
