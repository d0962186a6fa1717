from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_tasks.config import settings
from anchor_tasks.db import SessionLocal
from anchor_tasks.models import Notification, User, WorkspaceMember, utcnow
from anchor_tasks.notifications.service import NotificationMessage, NotificationSink, sink_for

logger = logging.getLogger(__name__)

BODY_LIMIT = 280


def item_link(board_id: str, item_id: str) -> str:
  return f"/tasks?board={board_id}&item={item_id}"


def truncate_body(body: str, limit: int = BODY_LIMIT) -> str:
  text = body or ""
  if len(text) <= limit:
    return text
  return text[: limit - 1] + "…"


async def _recently_delivered(db: AsyncSession, *, user_id: str, dedupe_key: str, now: datetime) -> bool:
  cutoff = now - timedelta(minutes=int(settings.notification_dedupe_minutes))
  res = await db.execute(
    select(Notification.id)
    .where(
      Notification.user_id == user_id,
      Notification.dedupe_key == dedupe_key,
      Notification.delivered.is_(True),
      Notification.status == "unread",
      Notification.created_at >= cutoff,
    )
    .limit(1)
  )
  return res.first() is not None


async def enqueue_notification(
  db: AsyncSession,
  *,
  user_id: str,
  title: str,
  body: str,
  link_url: str | None = None,
  dedupe_key: str | None = None,
  now: datetime | None = None,
) -> Notification:
  """
  Queue a notification for one user.

  Every call stores a row. When an unread, delivered notification with the
  same dedupe key exists inside the dedupe window the new row is stored with
  delivered=False: it stays in history but is not surfaced or dispatched.
  """
  now = now or utcnow()
  delivered = True
  if dedupe_key:
    delivered = not await _recently_delivered(db, user_id=user_id, dedupe_key=dedupe_key, now=now)
  n = Notification(
    user_id=user_id,
    title=title[:500],
    body=truncate_body(body),
    link_url=link_url,
    status="unread",
    dedupe_key=dedupe_key,
    delivered=delivered,
    created_at=now,
  )
  db.add(n)
  await db.flush()
  if not delivered:
    logger.debug("notification suppressed user=%s key=%s", user_id, dedupe_key)
  return n


async def notify_users(
  db: AsyncSession,
  *,
  user_ids: list[str],
  title: str,
  body: str,
  link_url: str | None = None,
  dedupe_prefix: str | None = None,
) -> list[Notification]:
  out: list[Notification] = []
  seen: set[str] = set()
  for uid in user_ids:
    if not uid or uid in seen:
      continue
    seen.add(uid)
    out.append(
      await enqueue_notification(
        db,
        user_id=uid,
        title=title,
        body=body,
        link_url=link_url,
        dedupe_key=(f"{dedupe_prefix}:{uid}" if dedupe_prefix else None),
      )
    )
  return out


async def workspace_admin_ids(db: AsyncSession, workspace_id: str) -> list[str]:
  res = await db.execute(
    select(WorkspaceMember.user_id)
    .where(WorkspaceMember.workspace_id == workspace_id, WorkspaceMember.role.in_(["owner", "admin"]))
    .order_by(WorkspaceMember.created_at.asc())
  )
  return [row.user_id for row in res.all()]


async def dispatch_notifications(notification_ids: list[str], *, sink: NotificationSink | None = None) -> list[dict[str, Any]]:
  """Hand delivered notifications to the external sink. Failures are logged per notification."""
  sink = sink or sink_for()
  results: list[dict[str, Any]] = []
  async with SessionLocal() as db:
    res = await db.execute(
      select(Notification, User.email)
      .join(User, User.id == Notification.user_id)
      .where(Notification.id.in_(notification_ids), Notification.delivered.is_(True))
    )
    rows = res.all()
  for n, email in rows:
    msg = NotificationMessage(notification_id=n.id, recipient_email=email, title=n.title, message=n.body, link_url=n.link_url)
    try:
      results.append(await sink.send(msg))
    except Exception as e:
      logger.warning("notification sink failed for %s: %s", n.id, e)
      results.append({"sink": type(sink).__name__, "status": "error", "detail": {"error": str(e), "notification_id": n.id}})
  return results


def schedule_dispatch(notification_ids: list[str]) -> None:
  """Call after commit with ids of delivered notifications. The in-app sink needs no dispatch."""
  ids = list(dict.fromkeys(notification_ids))
  if not ids or (settings.notification_sink or "local").strip().lower() == "local":
    return
  asyncio.create_task(dispatch_notifications(ids))
