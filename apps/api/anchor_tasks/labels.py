from __future__ import annotations

import re
from dataclasses import dataclass

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_tasks.errors import Conflict, Invariant
from anchor_tasks.models import Item, StatusLabel

# (label, color, is_done_state)
DEFAULT_LABELS: list[tuple[str, str, bool]] = [
  ("To Do", "#808080ff", False),
  ("Working on it", "#fdab3dff", False),
  ("Stuck", "#e2445cff", False),
  ("Done", "#00c875ff", True),
  ("Needs Attention", "#ff642eff", False),
]
DEFAULT_STATUS = "To Do"

LEGACY_STATUS = {
  "todo": "To Do",
  "to_do": "To Do",
  "working": "Working on it",
  "in_progress": "Working on it",
  "blocked": "Stuck",
  "stuck": "Stuck",
  "done": "Done",
  "needs_attention": "Needs Attention",
}

BUCKETS = ("todo", "working", "blocked", "done", "needs_attention")

_BUCKET_BY_NAME = {
  "to do": "todo",
  "todo": "todo",
  "not started": "todo",
  "working on it": "working",
  "working": "working",
  "in progress": "working",
  "stuck": "blocked",
  "blocked": "blocked",
  "done": "done",
  "complete": "done",
  "completed": "done",
  "needs attention": "needs_attention",
}

_COLOR_RE = re.compile(r"^#([0-9a-fA-F]{6})([0-9a-fA-F]{2})?$")


def normalize_color(value: str) -> str:
  m = _COLOR_RE.match((value or "").strip())
  if not m:
    raise Invariant("Color must be #RRGGBB or #RRGGBBAA", details={"color": value})
  return f"#{m.group(1).lower()}{(m.group(2) or 'ff').lower()}"


def _norm(value: str) -> str:
  return " ".join((value or "").replace("_", " ").split()).lower()


def legacy_label(value: str) -> str | None:
  key = "_".join((value or "").strip().lower().split())
  return LEGACY_STATUS.get(key)


def canonical_bucket(status: str, label: StatusLabel | None = None) -> str:
  if label is not None and label.is_done_state:
    return "done"
  name = _norm(label.label if label is not None else status)
  if name in _BUCKET_BY_NAME:
    return _BUCKET_BY_NAME[name]
  legacy = legacy_label(status)
  if legacy:
    return _BUCKET_BY_NAME[_norm(legacy)]
  return "todo"


async def ensure_default_labels(db: AsyncSession) -> None:
  """Seed the global catalog. Idempotent."""
  res = await db.execute(select(StatusLabel).where(StatusLabel.scope == "global"))
  existing = {lbl.label.lower(): lbl for lbl in res.scalars().all()}
  for idx, (name, color, done) in enumerate(DEFAULT_LABELS):
    lbl = existing.get(name.lower())
    if lbl is None:
      db.add(StatusLabel(scope="global", board_id=None, label=name, color=color, order_index=idx, is_done_state=done))
    elif lbl.archived_at is not None:
      # Defaults are always present.
      lbl.archived_at = None
  await db.flush()


@dataclass(frozen=True)
class Catalog:
  """Effective catalog for one board: board-local labels first, then globals."""

  labels: tuple[StatusLabel, ...]

  def by_id(self, label_id: str) -> StatusLabel | None:
    for lbl in self.labels:
      if lbl.id == label_id:
        return lbl
    return None

  def by_name(self, name: str) -> StatusLabel | None:
    wanted = _norm(name)
    for lbl in self.labels:
      if _norm(lbl.label) == wanted:
        return lbl
    return None

  def lookup(self, value: str) -> StatusLabel | None:
    lbl = self.by_id(value) or self.by_name(value)
    if lbl is not None:
      return lbl
    legacy = legacy_label(value)
    return self.by_name(legacy) if legacy else None

  def fallback_for(self, status: str) -> StatusLabel | None:
    bucket = canonical_bucket(status)
    for lbl in self.labels:
      if lbl.scope == "global" and canonical_bucket(lbl.label, lbl) == bucket:
        return lbl
    return self.by_name(DEFAULT_STATUS)

  def resolve_for_read(self, item: Item) -> StatusLabel | None:
    if item.status_label_id:
      lbl = self.by_id(item.status_label_id)
      if lbl is not None:
        return lbl
    return self.lookup(item.status) or self.fallback_for(item.status)

  def allowed(self) -> list[str]:
    return [lbl.label for lbl in self.labels]


async def load_catalog(db: AsyncSession, board_id: str) -> Catalog:
  res = await db.execute(
    select(StatusLabel)
    .where(
      StatusLabel.archived_at.is_(None),
      or_(StatusLabel.board_id == board_id, StatusLabel.scope == "global"),
    )
    .order_by(StatusLabel.scope.asc(), StatusLabel.order_index.asc(), StatusLabel.created_at.asc())
  )
  # "board" sorts before "global".
  return Catalog(labels=tuple(res.scalars().all()))


async def create_board_label(
  db: AsyncSession,
  *,
  board_id: str,
  label: str,
  color: str = "#c4c4c4ff",
  is_done_state: bool = False,
) -> StatusLabel:
  name = (label or "").strip()
  if not name:
    raise Invariant("Label text is required")
  dupe = await db.execute(
    select(StatusLabel.id).where(
      StatusLabel.scope == "board",
      StatusLabel.board_id == board_id,
      func.lower(StatusLabel.label) == name.lower(),
      StatusLabel.archived_at.is_(None),
    )
  )
  if dupe.first() is not None:
    raise Conflict("Label already exists on this board", details={"label": name})
  mres = await db.execute(select(func.max(StatusLabel.order_index)).where(StatusLabel.board_id == board_id))
  max_order = mres.scalar_one_or_none()
  lbl = StatusLabel(
    scope="board",
    board_id=board_id,
    label=name,
    color=normalize_color(color),
    order_index=(int(max_order) + 1) if max_order is not None else 0,
    is_done_state=bool(is_done_state),
  )
  db.add(lbl)
  await db.flush()
  return lbl


async def resolve_status(
  db: AsyncSession,
  board_id: str,
  value: str,
  *,
  create_if_missing: bool = False,
  can_manage_labels: bool = False,
) -> StatusLabel:
  """Resolve a status input (label id, label text, or legacy value) to a live catalog label."""
  raw = (value or "").strip()
  if not raw:
    raise Invariant("Status is required")
  catalog = await load_catalog(db, board_id)
  lbl = catalog.lookup(raw)
  if lbl is not None:
    return lbl
  if create_if_missing and can_manage_labels:
    return await create_board_label(db, board_id=board_id, label=raw)
  raise Invariant("Unknown status label", details={"status": raw, "allowed": catalog.allowed()})
