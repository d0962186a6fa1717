from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_tasks.models import AuditEvent


async def write_audit(
  db: AsyncSession,
  *,
  event_type: str,
  entity_type: str,
  entity_id: str | None,
  workspace_id: str | None = None,
  board_id: str | None = None,
  item_id: str | None = None,
  actor_id: str | None = None,
  payload: dict[str, Any] | None = None,
) -> AuditEvent:
  """Stage one audit row in the caller's transaction; it commits or rolls back with the write it describes."""
  ev = AuditEvent(
    workspace_id=workspace_id,
    board_id=board_id,
    item_id=item_id,
    actor_id=actor_id,
    event_type=event_type,
    entity_type=entity_type,
    entity_id=entity_id,
    payload=jsonable_encoder(payload or {}),
  )
  db.add(ev)
  return ev


async def items_touched(db: AsyncSession, board_id: str, *, start: datetime | None = None, end: datetime | None = None) -> int:
  """Distinct items of a board with at least one audited write in [start, end)."""
  q = select(func.count(distinct(AuditEvent.item_id))).where(AuditEvent.board_id == board_id, AuditEvent.item_id.is_not(None))
  if start is not None:
    q = q.where(AuditEvent.created_at >= start)
  if end is not None:
    q = q.where(AuditEvent.created_at < end)
  return int((await db.execute(q)).scalar_one() or 0)
