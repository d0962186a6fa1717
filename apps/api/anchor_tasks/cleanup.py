from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_tasks import store
from anchor_tasks.audit import write_audit
from anchor_tasks.config import settings
from anchor_tasks.models import Board, Item, utcnow

logger = logging.getLogger(__name__)


async def purge_archived_items(db: AsyncSession, *, now: datetime | None = None, limit: int = 200) -> int:
  """Hard-delete items archived longer than the retention period. Returns the number purged."""
  now = now or utcnow()
  cutoff = now - timedelta(days=int(settings.archived_retention_days))
  res = await db.execute(
    select(Item.id, Item.board_id, Board.workspace_id)
    .join(Board, Board.id == Item.board_id)
    .where(Item.archived_at.is_not(None), Item.archived_at < cutoff)
    .order_by(Item.archived_at.asc())
    .limit(int(limit))
  )
  rows = res.all()
  for item_id, board_id, workspace_id in rows:
    await store.hard_delete(db, Item, item_id)
    await write_audit(
      db,
      event_type="item.purged",
      entity_type="Item",
      entity_id=item_id,
      workspace_id=workspace_id,
      board_id=board_id,
      item_id=item_id,
      payload={"retention_days": settings.archived_retention_days},
    )
  await db.commit()
  if rows:
    logger.info("purged %d archived items older than %s", len(rows), cutoff.isoformat())
  return len(rows)
