from __future__ import annotations

import csv
import io
import re
from collections.abc import Iterable, Iterator
from datetime import date, datetime
from typing import Any

from anchor_tasks.labels import BUCKETS
from anchor_tasks.reports.service import BillingRow

REPORT_HEADER = [
  "board_id",
  "board_name",
  "total_items",
  *BUCKETS,
  "updates_in_range",
  "time_minutes_in_range",
  "items_updated_in_range",
]

BILLING_HEADER = [
  "board",
  "group",
  "item",
  "category",
  "total_minutes",
  "billable_minutes",
  "entry_count",
  "entries",
]


def _cell(value: Any) -> str:
  if value is None:
    return ""
  if isinstance(value, bool):
    return "true" if value else "false"
  if isinstance(value, (datetime, date)):
    return value.isoformat()
  return str(value)


def encode_rows(header: list[str], rows: Iterable[list[Any]]) -> Iterator[bytes]:
  """RFC 4180 records, UTF-8, LF terminated, one chunk per record."""
  buf = io.StringIO(newline="")
  w = csv.writer(buf, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)
  # minimal quoting can leave a bare CR unquoted when the terminator is LF
  w_all = csv.writer(buf, lineterminator="\n", quoting=csv.QUOTE_ALL)
  for row in _chain(header, rows):
    cells = [_cell(v) for v in row]
    (w_all if any("\r" in c for c in cells) else w).writerow(cells)
    chunk = buf.getvalue()
    buf.seek(0)
    buf.truncate(0)
    yield chunk.encode("utf-8")


def _chain(header: list[str], rows: Iterable[list[Any]]) -> Iterator[list[Any]]:
  yield header
  yield from rows


def report_records(rows: list[dict[str, Any]]) -> Iterator[list[Any]]:
  for r in rows:
    yield [
      r["board_id"],
      r["board_name"],
      r["total_items"],
      *(r["status_counts"][b] for b in BUCKETS),
      r["updates_in_range"],
      r["time_minutes_in_range"],
      r["items_updated_in_range"],
    ]


def _entry_line(e) -> str:
  stamp = e.created_at.strftime("%Y-%m-%d %H:%M")
  who = e.user_name or "Unknown"
  line = f"{stamp} {who}: {e.minutes} min ({e.billable_minutes} billable)"
  if e.description:
    line = f"{line} - {e.description}"
  return line


def billing_records(rows: list[BillingRow]) -> Iterator[list[Any]]:
  for r in rows:
    yield [
      r.board_name,
      r.group_name,
      r.item_name,
      r.category,
      r.total_minutes,
      r.billable_minutes,
      r.entry_count,
      "\n".join(_entry_line(e) for e in r.entries),
    ]


def board_slug(name: str) -> str:
  slug = re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")
  return slug or "board"


def billing_filename(board_name: str, today: date) -> str:
  return f"billing-report-{board_slug(board_name)}-{today.isoformat()}.csv"
