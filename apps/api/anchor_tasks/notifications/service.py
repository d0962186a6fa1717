from __future__ import annotations

import asyncio
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Protocol

import httpx

from anchor_tasks.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationMessage:
  notification_id: str
  recipient_email: str
  title: str
  message: str
  link_url: str | None = None


class NotificationSink(Protocol):
  async def send(self, msg: NotificationMessage) -> dict[str, Any]: ...


class LocalNotificationSink:
  """In-app only: the notification row is the delivery."""

  async def send(self, msg: NotificationMessage) -> dict[str, Any]:
    logger.debug("in-app notification %s for %s", msg.notification_id, msg.recipient_email)
    return {"sink": "local", "status": "sent", "detail": {"notification_id": msg.notification_id}}


class WebhookNotificationSink:
  def __init__(self, url: str | None) -> None:
    self.url = (url or "").strip()

  async def send(self, msg: NotificationMessage) -> dict[str, Any]:
    if not self.url:
      raise ValueError("Webhook sink missing notification_webhook_url")
    payload = {
      "notification_id": msg.notification_id,
      "to": msg.recipient_email,
      "title": msg.title,
      "body": msg.message,
      "link_url": msg.link_url,
    }
    async with httpx.AsyncClient(timeout=15) as client:
      r = await client.post(self.url, json=payload)
      r.raise_for_status()
    return {"sink": "webhook", "status": "sent", "detail": {"status_code": r.status_code}}


class SmtpNotificationSink:
  def __init__(self, *, host: str | None, port: int, from_addr: str | None, starttls: bool) -> None:
    self.host = (host or "").strip()
    self.port = int(port or 587)
    self.from_addr = (from_addr or "").strip()
    self.starttls = starttls

  async def send(self, msg: NotificationMessage) -> dict[str, Any]:
    if not self.host or not self.from_addr:
      raise ValueError("SMTP sink missing smtp_host/smtp_from")

    def _send_sync() -> None:
      m = EmailMessage()
      m["Subject"] = msg.title
      m["From"] = self.from_addr
      m["To"] = msg.recipient_email
      body = msg.message
      if msg.link_url:
        body = f"{body}\n\n{msg.link_url}"
      m.set_content(body)
      with smtplib.SMTP(host=self.host, port=self.port, timeout=15) as s:
        s.ehlo()
        if self.starttls:
          s.starttls()
          s.ehlo()
        s.send_message(m)

    await asyncio.to_thread(_send_sync)
    return {"sink": "smtp", "status": "sent", "detail": {"to": msg.recipient_email}}


def sink_for(kind: str | None = None) -> NotificationSink:
  kind = (kind or settings.notification_sink or "local").strip().lower()
  if kind == "webhook":
    return WebhookNotificationSink(settings.notification_webhook_url)
  if kind == "smtp":
    return SmtpNotificationSink(
      host=settings.smtp_host,
      port=settings.smtp_port,
      from_addr=settings.smtp_from,
      starttls=settings.smtp_starttls,
    )
  return LocalNotificationSink()
