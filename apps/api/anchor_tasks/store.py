from __future__ import annotations

import logging
from typing import Any, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_tasks.errors import Conflict, InvalidReference, NotFound
from anchor_tasks.models import (
  Assignee,
  AutomationLog,
  AutomationRule,
  Base,
  Board,
  Group,
  Item,
  ItemFile,
  StatusLabel,
  Subitem,
  TimeEntry,
  Update,
  utcnow,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=Base)

# Parent column that scopes order_index for each ordered entity.
ORDER_PARENT: dict[type, str] = {
  Group: "board_id",
  Item: "group_id",
  Subitem: "parent_item_id",
  StatusLabel: "board_id",
}


async def get(db: AsyncSession, model: type[M], entity_id: str, *, for_update: bool = False) -> M:
  q = select(model).where(model.id == entity_id)
  if for_update:
    q = q.with_for_update()
  res = await db.execute(q)
  obj = res.scalar_one_or_none()
  if obj is None:
    raise NotFound(f"{model.__name__} not found", details={"id": entity_id})
  return obj


async def get_reference(db: AsyncSession, model: type[M], entity_id: str, *, field: str) -> M:
  """Like `get`, but a missing row is a bad reference in the caller's payload."""
  res = await db.execute(select(model).where(model.id == entity_id))
  obj = res.scalar_one_or_none()
  if obj is None:
    raise InvalidReference(f"Unknown {field}", details={field: entity_id})
  return obj


def _order_by(model: type[Base]) -> list[Any]:
  return [model.order_index.asc(), model.created_at.asc(), model.id.asc()]


async def list_ordered(db: AsyncSession, model: type[M], parent_id: str, *, include_archived: bool = True) -> list[M]:
  """Children of one parent in strict total order (order_index, created_at, id)."""
  parent_col = getattr(model, ORDER_PARENT[model])
  q = select(model).where(parent_col == parent_id)
  if not include_archived and hasattr(model, "archived_at"):
    q = q.where(model.archived_at.is_(None))
  res = await db.execute(q.order_by(*_order_by(model)))
  return list(res.scalars().all())


async def next_order_index(db: AsyncSession, model: type[Base], parent_id: str) -> int:
  parent_col = getattr(model, ORDER_PARENT[model])
  res = await db.execute(select(func.max(model.order_index)).where(parent_col == parent_id))
  max_order = res.scalar_one_or_none()
  return (int(max_order) + 1) if max_order is not None else 0


async def create(db: AsyncSession, obj: M) -> M:
  db.add(obj)
  try:
    await db.flush()
  except IntegrityError as e:
    raise Conflict(f"{type(obj).__name__} violates a unique constraint", details={"error": str(e.orig)}) from e
  return obj


async def insert_ordered(db: AsyncSession, obj: M, parent_id: str, order_index: int | None = None) -> M:
  """Append, or insert at `order_index` shifting successors by one."""
  model = type(obj)
  if order_index is None:
    obj.order_index = await next_order_index(db, model, parent_id)
    return await create(db, obj)
  siblings = await list_ordered(db, model, parent_id)
  idx = min(max(order_index, 0), len(siblings))
  obj.order_index = idx
  await create(db, obj)
  siblings.insert(idx, obj)
  _reindex(siblings)
  return obj


def _reindex(rows: list[Any]) -> None:
  for idx, row in enumerate(rows):
    if row.order_index != idx:
      row.order_index = idx


def patch(obj: Base, fields: dict[str, Any]) -> dict[str, tuple[Any, Any]]:
  """Apply a partial field map; returns {field: (before, after)} for fields that changed."""
  changes: dict[str, tuple[Any, Any]] = {}
  for key, value in fields.items():
    before = getattr(obj, key)
    if before != value:
      setattr(obj, key, value)
      changes[key] = (before, value)
  return changes


async def reorder(db: AsyncSession, model: type[M], entity_id: str, new_order_index: int) -> M:
  obj = await get(db, model, entity_id)
  parent_id = getattr(obj, ORDER_PARENT[model])
  siblings = [s for s in await list_ordered(db, model, parent_id) if s.id != obj.id]
  idx = min(max(new_order_index, 0), len(siblings))
  siblings.insert(idx, obj)
  _reindex(siblings)
  await db.flush()
  return obj


async def reorder_all(db: AsyncSession, model: type[M], parent_id: str, ordered_ids: list[str]) -> list[M]:
  rows = await list_ordered(db, model, parent_id)
  by_id = {r.id: r for r in rows}
  if len(ordered_ids) != len(set(ordered_ids)) or set(ordered_ids) != set(by_id):
    raise InvalidReference("Ordering must list every sibling exactly once", details={"expected": sorted(by_id)})
  ordered = [by_id[i] for i in ordered_ids]
  _reindex(ordered)
  await db.flush()
  return ordered


async def move_item(db: AsyncSession, item: Item, target: Group, order_index: int | None = None) -> None:
  """Relocate an item (possibly across groups) and re-index both groups in one unit of work."""
  source_group_id = item.group_id
  if target.id == source_group_id:
    await reorder(db, Item, item.id, order_index if order_index is not None else item.order_index)
    return
  source = [x for x in await list_ordered(db, Item, source_group_id) if x.id != item.id]
  dest = await list_ordered(db, Item, target.id)
  idx = len(dest) if order_index is None else min(max(order_index, 0), len(dest))
  dest.insert(idx, item)
  item.group_id = target.id
  _reindex(source)
  _reindex(dest)
  await db.flush()


async def archive(db: AsyncSession, obj: Item | Board | StatusLabel) -> bool:
  if obj.archived_at is not None:
    return False
  obj.archived_at = utcnow()
  await db.flush()
  return True


async def restore(db: AsyncSession, obj: Item | Board | StatusLabel) -> bool:
  if obj.archived_at is None:
    return False
  obj.archived_at = None
  await db.flush()
  return True


async def _delete_items(db: AsyncSession, item_ids: list[str]) -> int:
  if not item_ids:
    return 0
  await db.execute(delete(Subitem).where(Subitem.parent_item_id.in_(item_ids)))
  await db.execute(delete(Assignee).where(Assignee.item_id.in_(item_ids)))
  await db.execute(delete(Update).where(Update.item_id.in_(item_ids)))
  await db.execute(delete(ItemFile).where(ItemFile.item_id.in_(item_ids)))
  await db.execute(delete(TimeEntry).where(TimeEntry.item_id.in_(item_ids)))
  res = await db.execute(delete(Item).where(Item.id.in_(item_ids)))
  return int(res.rowcount or 0)


async def hard_delete(db: AsyncSession, model: type[Base], entity_id: str) -> int:
  """Delete an entity and everything it owns. Returns the number of items removed."""
  if model is Item:
    await get(db, Item, entity_id)
    removed = await _delete_items(db, [entity_id])
  elif model is Group:
    group = await get(db, Group, entity_id)
    res = await db.execute(select(Item.id).where(Item.group_id == entity_id))
    removed = await _delete_items(db, [r.id for r in res.all()])
    await db.execute(delete(Group).where(Group.id == entity_id))
    _reindex([g for g in await list_ordered(db, Group, group.board_id) if g.id != entity_id])
  elif model is Board:
    await get(db, Board, entity_id)
    res = await db.execute(select(Item.id).where(Item.board_id == entity_id))
    removed = await _delete_items(db, [r.id for r in res.all()])
    rule_ids = select(AutomationRule.id).where(AutomationRule.board_id == entity_id)
    await db.execute(delete(AutomationLog).where(AutomationLog.rule_id.in_(rule_ids)))
    await db.execute(delete(AutomationRule).where(AutomationRule.board_id == entity_id))
    await db.execute(delete(Group).where(Group.board_id == entity_id))
    await db.execute(delete(StatusLabel).where(StatusLabel.board_id == entity_id))
    await db.execute(delete(Board).where(Board.id == entity_id))
  elif model is AutomationRule:
    await get(db, AutomationRule, entity_id)
    await db.execute(delete(AutomationLog).where(AutomationLog.rule_id == entity_id))
    await db.execute(delete(AutomationRule).where(AutomationRule.id == entity_id))
    removed = 0
  else:
    obj = await get(db, model, entity_id)
    await db.delete(obj)
    removed = 0
  await db.flush()
  logger.debug("hard-deleted %s %s (%d items)", model.__name__, entity_id, removed)
  return removed
