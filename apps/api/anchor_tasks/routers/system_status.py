from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_tasks.config import settings
from anchor_tasks.deps import get_current_user, get_db
from anchor_tasks.metrics import runtime_metrics
from anchor_tasks.models import AutomationLog, Notification, User, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks/system", tags=["system"])


def _as_state(ok: bool, warn: bool = False) -> str:
  if not ok:
    return "red"
  return "yellow" if warn else "green"


@router.get("/status")
async def system_status(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
  now = utcnow()
  try:
    await db.execute(text("SELECT 1"))
    db_ok = True
  except SQLAlchemyError:
    logger.warning("database health check failed", exc_info=True)
    db_ok = False

  failed_24h = 0
  pending = 0
  if db_ok:
    fres = await db.execute(
      select(func.count(AutomationLog.id)).where(AutomationLog.outcome == "failed", AutomationLog.fired_at >= now - timedelta(hours=24))
    )
    failed_24h = int(fres.scalar_one() or 0)
    pres = await db.execute(select(func.count(Notification.id)).where(Notification.delivered.is_(True), Notification.status == "unread"))
    pending = int(pres.scalar_one() or 0)

  metrics = runtime_metrics.snapshot()
  errors = int(metrics["error_count_1h"])
  return {
    "generated_at": now,
    "version": settings.app_version,
    "build_sha": settings.build_sha,
    "database": {"state": _as_state(db_ok), "dialect": db.bind.dialect.name},
    "api": {"state": _as_state(True, warn=errors > 0), **metrics},
    "automations": {"state": _as_state(True, warn=failed_24h > 0), "failed_24h": failed_24h},
    "notifications": {"sink": settings.notification_sink, "unread_delivered": pending},
    "rate_limiter": {"backend": "redis" if settings.redis_url else "memory"},
  }
