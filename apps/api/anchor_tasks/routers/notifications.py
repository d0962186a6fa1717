from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_tasks.deps import get_current_user, get_db
from anchor_tasks.errors import NotFound
from anchor_tasks.models import Notification, User, utcnow
from anchor_tasks.schemas import NotificationOut

router = APIRouter(prefix="/tasks/notifications", tags=["notifications"])


def _out(n: Notification) -> NotificationOut:
  return NotificationOut(id=n.id, title=n.title, body=n.body, link_url=n.link_url, status=n.status, created_at=n.created_at, read_at=n.read_at)


def _visible(user: User):
  # Suppressed duplicates are kept for history but never shown.
  return (Notification.user_id == user.id, Notification.delivered.is_(True))


@router.get("", response_model=list[NotificationOut])
async def list_notifications(
  unread_only: bool = False,
  limit: int = Query(default=50, ge=1, le=200),
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> list[NotificationOut]:
  q = select(Notification).where(*_visible(user))
  if unread_only:
    q = q.where(Notification.status == "unread")
  res = await db.execute(q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit))
  return [_out(n) for n in res.scalars().all()]


@router.get("/unread-count")
async def unread_count(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> dict:
  res = await db.execute(select(func.count(Notification.id)).where(*_visible(user), Notification.status == "unread"))
  return {"count": int(res.scalar_one() or 0)}


@router.post("/read-all")
async def mark_all_read(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> dict:
  res = await db.execute(
    update(Notification).where(Notification.user_id == user.id, Notification.status == "unread").values(status="read", read_at=utcnow())
  )
  await db.commit()
  return {"ok": True, "updated": int(res.rowcount or 0)}


@router.post("/{notification_id}/read", response_model=NotificationOut)
async def mark_read(notification_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> NotificationOut:
  res = await db.execute(select(Notification).where(Notification.id == notification_id, Notification.user_id == user.id))
  n = res.scalar_one_or_none()
  if n is None:
    raise NotFound("Notification not found", details={"id": notification_id})
  if n.status != "read":
    n.status = "read"
    n.read_at = utcnow()
  await db.commit()
  return _out(n)
