from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_tasks import store
from anchor_tasks.audit import write_audit
from anchor_tasks.deps import membership_role
from anchor_tasks.errors import Conflict, Invariant, InvalidReference, NotFound
from anchor_tasks.labels import DEFAULT_STATUS, create_board_label, normalize_color, resolve_status
from anchor_tasks.mentions import resolve_mentions
from anchor_tasks.models import Assignee, Board, Group, Item, Notification, StatusLabel, Subitem, Update, User, utcnow
from anchor_tasks.notifications.events import enqueue_notification, item_link, schedule_dispatch

logger = logging.getLogger(__name__)

ITEM_PATCH_FIELDS = ("name", "status", "due_date", "needs_attention", "is_voicemail")
SUBITEM_STATUSES = ("todo", "done")
UPDATE_BODY_LIMIT = 10_000


@dataclass(frozen=True)
class Actor:
  id: str | None
  name: str

  @classmethod
  def of(cls, user: User) -> "Actor":
    return cls(id=user.id, name=user.name)


SYSTEM_ACTOR = Actor(id=None, name="Automation")


@dataclass(frozen=True)
class ChangeEvent:
  kind: str
  entity: str
  entity_id: str
  board_id: str | None
  item_id: str | None
  before: dict[str, Any] | None
  after: dict[str, Any] | None
  actor: Actor
  at: datetime
  changed: tuple[str, ...] = ()


@dataclass
class CausalChain:
  """Rules already fired while handling one request."""

  fired: set[str] = field(default_factory=set)
  depth: int = 0


def item_snapshot(it: Item) -> dict[str, Any]:
  return {
    "id": it.id,
    "board_id": it.board_id,
    "group_id": it.group_id,
    "name": it.name,
    "status": it.status,
    "status_label_id": it.status_label_id,
    "due_date": it.due_date.isoformat() if it.due_date else None,
    "is_voicemail": bool(it.is_voicemail),
    "needs_attention": bool(it.needs_attention),
    "order_index": it.order_index,
    "archived_at": it.archived_at.isoformat() if it.archived_at else None,
  }


def _clean_name(value: str | None, what: str) -> str:
  name = (value or "").strip()
  if not name:
    raise Invariant(f"{what} name is required")
  return name


class EditSession:
  """
  One unit of work against the entity store.

  Writes go through the session so each one records an audit row and a
  ChangeEvent. `commit()` persists, then hands the events to the automation
  engine in the order they were recorded.
  """

  def __init__(self, db: AsyncSession, actor: Actor, *, chain: CausalChain | None = None) -> None:
    self.db = db
    self.actor = actor
    self.chain = chain or CausalChain()
    self.events: list[ChangeEvent] = []
    self.notification_ids: list[str] = []

  async def emit(
    self,
    kind: str,
    *,
    entity: str,
    entity_id: str,
    board: Board | None = None,
    item_id: str | None = None,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
    changed: tuple[str, ...] = (),
  ) -> ChangeEvent:
    ev = ChangeEvent(
      kind=kind,
      entity=entity,
      entity_id=entity_id,
      board_id=board.id if board else None,
      item_id=item_id,
      before=before,
      after=after,
      actor=self.actor,
      at=utcnow(),
      changed=changed,
    )
    self.events.append(ev)
    await write_audit(
      self.db,
      event_type=kind,
      entity_type=entity,
      entity_id=entity_id,
      workspace_id=board.workspace_id if board else None,
      board_id=board.id if board else None,
      item_id=item_id,
      actor_id=self.actor.id,
      payload={"changed": list(changed), "after": after},
    )
    return ev

  def _track(self, n: Notification) -> None:
    if n.delivered:
      self.notification_ids.append(n.id)

  def take_events(self) -> list[ChangeEvent]:
    events, self.events = self.events, []
    return events

  async def commit(self) -> None:
    from anchor_tasks.automations.engine import process_events

    await self.db.commit()
    events = self.take_events()
    if events:
      logger.debug("committed %d change events (actor=%s)", len(events), self.actor.id or "system")
      self.notification_ids.extend(await process_events(self.db, events, chain=self.chain))
    schedule_dispatch(self.notification_ids)

  # boards

  async def create_board(self, *, workspace_id: str, name: str, description: str = "") -> Board:
    b = await store.create(self.db, Board(workspace_id=workspace_id, name=_clean_name(name, "Board"), description=description or ""))
    await self.emit("board.created", entity="Board", entity_id=b.id, board=b, after={"name": b.name})
    return b

  async def patch_board(self, b: Board, fields: dict[str, Any]) -> Board:
    clean: dict[str, Any] = {}
    if "name" in fields:
      clean["name"] = _clean_name(fields["name"], "Board")
    if "description" in fields:
      clean["description"] = fields["description"] or ""
    before = {k: getattr(b, k) for k in clean}
    changes = store.patch(b, clean)
    await self.emit("board.updated", entity="Board", entity_id=b.id, board=b, before=before, after=clean, changed=tuple(changes))
    return b

  async def delete_board(self, b: Board) -> None:
    removed = await store.hard_delete(self.db, Board, b.id)
    await self.emit("board.deleted", entity="Board", entity_id=b.id, board=b, before={"name": b.name, "items": removed})

  # groups

  async def create_group(self, b: Board, *, name: str, order_index: int | None = None, color: str | None = None) -> Group:
    g = Group(board_id=b.id, name=_clean_name(name, "Group"), color=normalize_color(color) if color else None)
    await store.insert_ordered(self.db, g, b.id, order_index)
    await self.emit("group.created", entity="Group", entity_id=g.id, board=b, after={"name": g.name, "order_index": g.order_index})
    return g

  async def patch_group(self, b: Board, g: Group, fields: dict[str, Any]) -> Group:
    clean: dict[str, Any] = {}
    if "name" in fields:
      clean["name"] = _clean_name(fields["name"], "Group")
    if "color" in fields:
      clean["color"] = normalize_color(fields["color"]) if fields["color"] else None
    changes = store.patch(g, clean)
    if "order_index" in fields and fields["order_index"] is not None:
      before_idx = g.order_index
      await store.reorder(self.db, Group, g.id, int(fields["order_index"]))
      if g.order_index != before_idx:
        changes["order_index"] = (before_idx, g.order_index)
    await self.emit("group.updated", entity="Group", entity_id=g.id, board=b, after=clean, changed=tuple(changes))
    return g

  async def reorder_groups(self, b: Board, group_ids: list[str]) -> list[Group]:
    groups = await store.reorder_all(self.db, Group, b.id, group_ids)
    await self.emit("groups.reordered", entity="Board", entity_id=b.id, board=b, after={"group_ids": group_ids}, changed=("order_index",))
    return groups

  async def delete_group(self, b: Board, g: Group) -> int:
    removed = await store.hard_delete(self.db, Group, g.id)
    await self.emit("group.deleted", entity="Group", entity_id=g.id, board=b, before={"name": g.name, "items": removed})
    return removed

  # labels

  async def create_label(self, b: Board, *, label: str, color: str, is_done_state: bool = False) -> StatusLabel:
    lbl = await create_board_label(self.db, board_id=b.id, label=label, color=color, is_done_state=is_done_state)
    await self.emit("label.created", entity="StatusLabel", entity_id=lbl.id, board=b, after={"label": lbl.label, "color": lbl.color})
    return lbl

  async def patch_label(self, b: Board, lbl: StatusLabel, fields: dict[str, Any]) -> StatusLabel:
    if lbl.scope != "board":
      raise Invariant("Global labels are read-only")
    clean: dict[str, Any] = {}
    if "label" in fields:
      clean["label"] = _clean_name(fields["label"], "Label")
    if "color" in fields:
      clean["color"] = normalize_color(fields["color"])
    if "is_done_state" in fields:
      clean["is_done_state"] = bool(fields["is_done_state"])
    old_text = lbl.label
    changes = store.patch(lbl, clean)
    if "label" in changes:
      # Items carry the label text alongside the id.
      res = await self.db.execute(select(Item).where(Item.status_label_id == lbl.id))
      for it in res.scalars().all():
        it.status = lbl.label
    if "order_index" in fields and fields["order_index"] is not None:
      await store.reorder(self.db, StatusLabel, lbl.id, int(fields["order_index"]))
      changes["order_index"] = (None, lbl.order_index)
    try:
      await self.db.flush()
    except IntegrityError as e:
      raise Conflict("Label already exists on this board", details={"label": lbl.label}) from e
    await self.emit("label.updated", entity="StatusLabel", entity_id=lbl.id, board=b, before={"label": old_text}, after=clean, changed=tuple(changes))
    return lbl

  async def archive_label(self, b: Board, lbl: StatusLabel) -> StatusLabel:
    if lbl.scope != "board":
      raise Invariant("Global labels cannot be deleted")
    await store.archive(self.db, lbl)
    await self.emit("label.archived", entity="StatusLabel", entity_id=lbl.id, board=b, before={"label": lbl.label})
    return lbl

  # items

  async def create_item(
    self,
    b: Board,
    g: Group,
    *,
    name: str,
    status: str | None = None,
    due_date: date | None = None,
    create_if_missing: bool = False,
    can_manage_labels: bool = False,
  ) -> Item:
    lbl = await resolve_status(
      self.db, b.id, status or DEFAULT_STATUS, create_if_missing=create_if_missing, can_manage_labels=can_manage_labels
    )
    it = Item(
      board_id=b.id,
      group_id=g.id,
      name=_clean_name(name, "Item"),
      status=lbl.label,
      status_label_id=lbl.id,
      due_date=due_date,
      created_by=self.actor.id,
    )
    await store.insert_ordered(self.db, it, g.id)
    await self.emit("item.created", entity="Item", entity_id=it.id, board=b, item_id=it.id, after=item_snapshot(it))
    return it

  async def patch_item(
    self,
    b: Board,
    it: Item,
    fields: dict[str, Any],
    *,
    create_if_missing: bool = False,
    can_manage_labels: bool = False,
    expected_version: int | None = None,
  ) -> Item:
    if it.archived_at is not None:
      raise Invariant("Archived items are read-only", details={"item_id": it.id})
    if expected_version is not None and expected_version != it.version:
      raise Conflict("Version conflict", details={"expected": expected_version, "current": it.version})
    unknown = set(fields) - set(ITEM_PATCH_FIELDS)
    if unknown:
      raise Invariant("Unknown item fields", details={"fields": sorted(unknown)})

    clean: dict[str, Any] = {}
    if "name" in fields:
      clean["name"] = _clean_name(fields["name"], "Item")
    if "status" in fields:
      lbl = await resolve_status(
        self.db, b.id, fields["status"] or "", create_if_missing=create_if_missing, can_manage_labels=can_manage_labels
      )
      clean["status"] = lbl.label
      clean["status_label_id"] = lbl.id
    if "due_date" in fields:
      value = fields["due_date"]
      if value is not None and not isinstance(value, date):
        raise Invariant("due_date must be a calendar date or null", details={"due_date": value})
      clean["due_date"] = value
    for flag in ("needs_attention", "is_voicemail"):
      if flag in fields:
        if not isinstance(fields[flag], bool):
          raise Invariant(f"{flag} must be a boolean", details={flag: fields[flag]})
        clean[flag] = fields[flag]

    before = item_snapshot(it)
    changes = store.patch(it, clean)
    if changes:
      it.version += 1
      it.updated_at = utcnow()
    await self.db.flush()
    changed = tuple(k for k in changes if k != "status_label_id")
    await self.emit("item.updated", entity="Item", entity_id=it.id, board=b, item_id=it.id, before=before, after=item_snapshot(it), changed=changed)
    return it

  async def move_item(self, b: Board, it: Item, target: Group, order_index: int | None = None) -> Item:
    if target.board_id != it.board_id:
      raise InvalidReference("Target group belongs to another board", details={"group_id": target.id})
    before = item_snapshot(it)
    await store.move_item(self.db, it, target, order_index)
    it.version += 1
    changed = tuple(k for k in ("group_id", "order_index") if before[k] != getattr(it, k))
    await self.emit("item.moved", entity="Item", entity_id=it.id, board=b, item_id=it.id, before=before, after=item_snapshot(it), changed=changed)
    return it

  async def archive_item(self, b: Board, it: Item) -> Item:
    before = item_snapshot(it)
    if await store.archive(self.db, it):
      it.version += 1
      await self.emit("item.archived", entity="Item", entity_id=it.id, board=b, item_id=it.id, before=before, after=item_snapshot(it), changed=("archived_at",))
    return it

  async def restore_item(self, b: Board, it: Item) -> Item:
    before = item_snapshot(it)
    if await store.restore(self.db, it):
      it.version += 1
      await self.emit("item.restored", entity="Item", entity_id=it.id, board=b, item_id=it.id, before=before, after=item_snapshot(it), changed=("archived_at",))
    return it

  async def delete_item(self, b: Board, it: Item) -> None:
    before = item_snapshot(it)
    await store.hard_delete(self.db, Item, it.id)
    await self.emit("item.deleted", entity="Item", entity_id=before["id"], board=b, item_id=before["id"], before=before)

  # subitems

  async def create_subitem(self, b: Board, it: Item, *, name: str, status: str = "todo") -> Subitem:
    if status not in SUBITEM_STATUSES:
      raise Invariant("Subitem status must be todo or done", details={"status": status})
    s = Subitem(parent_item_id=it.id, name=_clean_name(name, "Subitem"), status=status)
    await store.insert_ordered(self.db, s, it.id)
    await self.emit("subitem.created", entity="Subitem", entity_id=s.id, board=b, item_id=it.id, after={"name": s.name, "status": s.status})
    return s

  async def patch_subitem(self, b: Board, s: Subitem, fields: dict[str, Any]) -> Subitem:
    clean: dict[str, Any] = {}
    if "name" in fields:
      clean["name"] = _clean_name(fields["name"], "Subitem")
    if "status" in fields:
      if fields["status"] not in SUBITEM_STATUSES:
        raise Invariant("Subitem status must be todo or done", details={"status": fields["status"]})
      clean["status"] = fields["status"]
    before = {"name": s.name, "status": s.status}
    changes = store.patch(s, clean)
    if "order_index" in fields and fields["order_index"] is not None:
      await store.reorder(self.db, Subitem, s.id, int(fields["order_index"]))
    await self.emit("subitem.updated", entity="Subitem", entity_id=s.id, board=b, item_id=s.parent_item_id, before=before, after=clean, changed=tuple(changes))
    return s

  async def delete_subitem(self, b: Board, s: Subitem) -> None:
    parent_id = s.parent_item_id
    await store.hard_delete(self.db, Subitem, s.id)
    await store.reorder_all(self.db, Subitem, parent_id, [x.id for x in await store.list_ordered(self.db, Subitem, parent_id)])
    await self.emit("subitem.deleted", entity="Subitem", entity_id=s.id, board=b, item_id=parent_id, before={"name": s.name})

  # assignees

  async def add_assignee(self, b: Board, it: Item, user_id: str) -> Assignee:
    ures = await self.db.execute(select(User).where(User.id == user_id))
    u = ures.scalar_one_or_none()
    if u is None or await membership_role(b.workspace_id, user_id, self.db) is None:
      raise InvalidReference("Assignee must be a member of the board's workspace", details={"user_id": user_id})
    res = await self.db.execute(select(Assignee).where(Assignee.item_id == it.id, Assignee.user_id == user_id))
    existing = res.scalar_one_or_none()
    if existing is not None:
      return existing
    a = await store.create(self.db, Assignee(item_id=it.id, user_id=user_id))
    await self.emit("assignee.added", entity="Assignee", entity_id=f"{it.id}:{user_id}", board=b, item_id=it.id, after={"user_id": user_id})
    if user_id != self.actor.id:
      self._track(
        await enqueue_notification(
          self.db,
          user_id=user_id,
          title=f"Assigned: {it.name}",
          body=f"{self.actor.name} assigned you to {it.name}",
          link_url=item_link(b.id, it.id),
          dedupe_key=f"assign:{it.id}:{user_id}",
        )
      )
    return a

  async def remove_assignee(self, b: Board, it: Item, user_id: str) -> None:
    res = await self.db.execute(select(Assignee).where(Assignee.item_id == it.id, Assignee.user_id == user_id))
    a = res.scalar_one_or_none()
    if a is None:
      raise NotFound("Assignee not found", details={"item_id": it.id, "user_id": user_id})
    await self.db.delete(a)
    await self.db.flush()
    await self.emit("assignee.removed", entity="Assignee", entity_id=f"{it.id}:{user_id}", board=b, item_id=it.id, before={"user_id": user_id})

  # updates

  async def post_update(self, b: Board, it: Item, body: str, *, is_system: bool = False) -> Update:
    text = (body or "").strip()
    if not text:
      raise Invariant("Update body is required")
    if len(text) > UPDATE_BODY_LIMIT:
      raise Invariant("Update body is too long", details={"limit": UPDATE_BODY_LIMIT})
    targets = await resolve_mentions(self.db, b.workspace_id, text)
    u = Update(
      item_id=it.id,
      author_user_id=self.actor.id,
      body=text,
      mentions=[t.id for t in targets],
      is_system=is_system,
    )
    await store.create(self.db, u)
    for target in targets:
      if target.id == self.actor.id:
        continue
      self._track(
        await enqueue_notification(
          self.db,
          user_id=target.id,
          title=it.name,
          body=text,
          link_url=item_link(b.id, it.id),
          dedupe_key=f"mention:{it.id}:{target.id}",
        )
      )
    await self.emit(
      "update.created",
      entity="Update",
      entity_id=u.id,
      board=b,
      item_id=it.id,
      after={"body": text[:500], "mentions": list(u.mentions), "is_system": is_system},
    )
    return u
