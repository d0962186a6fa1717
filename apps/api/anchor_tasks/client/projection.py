from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Any
from uuid import uuid4

from anchor_tasks.client.api import TaskApiClient, TaskApiError

logger = logging.getLogger(__name__)


def _frozen(d: Mapping[str, Any]) -> Mapping[str, Any]:
  return MappingProxyType(dict(d))


@dataclass(frozen=True)
class BoardSnapshot:
  """Read-only copy of one board view. Every change returns a new snapshot."""

  board: Mapping[str, Any]
  groups: tuple[Mapping[str, Any], ...]
  items: tuple[Mapping[str, Any], ...]
  assignees_by_item: Mapping[str, tuple[Mapping[str, Any], ...]]

  @classmethod
  def from_view(cls, view: Mapping[str, Any]) -> "BoardSnapshot":
    assignees = view.get("assignees_by_item") or {}
    return cls(
      board=_frozen(view["board"]),
      groups=tuple(_frozen(g) for g in view.get("groups") or []),
      items=tuple(_frozen(it) for it in view.get("items") or []),
      assignees_by_item=MappingProxyType({k: tuple(_frozen(a) for a in v) for k, v in assignees.items()}),
    )

  @property
  def board_id(self) -> str:
    return str(self.board["id"])

  def item(self, item_id: str) -> Mapping[str, Any] | None:
    for it in self.items:
      if it["id"] == item_id:
        return it
    return None

  def items_in_group(self, group_id: str) -> list[Mapping[str, Any]]:
    return sorted((it for it in self.items if it["group_id"] == group_id), key=lambda it: it["order_index"])

  def with_item(self, item: Mapping[str, Any]) -> "BoardSnapshot":
    row = _frozen(item)
    if self.item(row["id"]) is None:
      return replace(self, items=self.items + (row,))
    return replace(self, items=tuple(row if it["id"] == row["id"] else it for it in self.items))

  def with_item_fields(self, item_id: str, fields: Mapping[str, Any]) -> "BoardSnapshot":
    current = self.item(item_id)
    if current is None:
      return self
    return self.with_item({**current, **fields})

  def with_moved_item(self, item_id: str, group_id: str, order_index: int | None = None) -> "BoardSnapshot":
    moving = self.item(item_id)
    if moving is None:
      return self
    source = moving["group_id"]

    def others(gid: str) -> list[Mapping[str, Any]]:
      return [it for it in self.items_in_group(gid) if it["id"] != item_id]

    target_rows = others(group_id)
    pos = len(target_rows) if order_index is None else max(0, min(int(order_index), len(target_rows)))
    target_rows.insert(pos, {**moving, "group_id": group_id})
    renumbered = {it["id"]: _frozen({**it, "order_index": idx}) for idx, it in enumerate(target_rows)}
    if source != group_id:
      renumbered.update({it["id"]: _frozen({**it, "order_index": idx}) for idx, it in enumerate(others(source))})
    return replace(self, items=tuple(renumbered.get(it["id"], it) for it in self.items))

  def with_assignees(self, item_id: str, assignees: list[Mapping[str, Any]]) -> "BoardSnapshot":
    merged = dict(self.assignees_by_item)
    merged[item_id] = tuple(_frozen(a) for a in assignees)
    return replace(self, assignees_by_item=MappingProxyType(merged))


@dataclass(frozen=True)
class PendingEdit:
  correlation_id: str
  item_id: str
  fields: Mapping[str, Any]
  kind: str = "patch"  # patch | move


class BoardProjection:
  """
  Optimistic view of one board.

  `authoritative` is the last server truth; `local` is that truth with the
  still-pending edits re-applied in issue order. Per (item_id, field) only
  the most recent edit's response is applied; older ones are dropped.
  """

  def __init__(self, api: TaskApiClient, board_id: str) -> None:
    self.api = api
    self.board_id = board_id
    self.authoritative: BoardSnapshot | None = None
    self.local: BoardSnapshot | None = None
    self.error: str | None = None
    self._pending: dict[str, PendingEdit] = {}
    self._latest: dict[tuple[str, str], str] = {}

  async def load(self) -> BoardSnapshot:
    view = await self.api.board_view(self.board_id)
    self.authoritative = BoardSnapshot.from_view(view)
    self._rebuild_local()
    return self.local

  def dismiss_error(self) -> None:
    self.error = None

  @property
  def pending(self) -> list[PendingEdit]:
    return list(self._pending.values())

  def _apply(self, snap: BoardSnapshot, edit: PendingEdit) -> BoardSnapshot:
    if edit.kind == "move":
      return snap.with_moved_item(edit.item_id, edit.fields["group_id"], edit.fields.get("order_index"))
    return snap.with_item_fields(edit.item_id, edit.fields)

  def _rebuild_local(self) -> None:
    snap = self.authoritative
    for edit in self._pending.values():
      snap = self._apply(snap, edit)
    self.local = snap

  def begin(self, item_id: str, fields: Mapping[str, Any], *, kind: str = "patch") -> PendingEdit:
    if self.authoritative is None:
      raise RuntimeError("board view not loaded")
    edit = PendingEdit(correlation_id=uuid4().hex, item_id=item_id, fields=_frozen(fields), kind=kind)
    self._pending[edit.correlation_id] = edit
    for f in edit.fields:
      self._latest[(item_id, f)] = edit.correlation_id
    self.local = self._apply(self.local, edit)
    return edit

  def is_superseded(self, edit: PendingEdit) -> bool:
    return all(self._latest.get((edit.item_id, f)) != edit.correlation_id for f in edit.fields)

  def _settle(self, edit: PendingEdit) -> bool:
    """Forget the edit. True when its response should still be applied."""
    live = not self.is_superseded(edit)
    self._pending.pop(edit.correlation_id, None)
    for f in edit.fields:
      if self._latest.get((edit.item_id, f)) == edit.correlation_id:
        del self._latest[(edit.item_id, f)]
    return live

  def reconcile(self, edit: PendingEdit, server_item: Mapping[str, Any]) -> None:
    if self._settle(edit):
      self.authoritative = self.authoritative.with_item(server_item)
    else:
      logger.debug("dropping superseded response %s for item %s", edit.correlation_id, edit.item_id)
    self._rebuild_local()

  async def _recover(self, error: TaskApiError) -> None:
    self.error = error.banner()
    try:
      view = await self.api.board_view(self.board_id)
    except TaskApiError as e:
      logger.warning("board %s reload after failed edit also failed: %s", self.board_id, e.banner())
    else:
      self.authoritative = BoardSnapshot.from_view(view)
    self._rebuild_local()

  async def fail(self, edit: PendingEdit, error: TaskApiError) -> None:
    if not self._settle(edit):
      self._rebuild_local()
      return
    await self._recover(error)

  async def patch_item(self, item_id: str, fields: Mapping[str, Any]) -> Mapping[str, Any] | None:
    edit = self.begin(item_id, fields)
    try:
      server_item = await self.api.patch_item(item_id, dict(fields))
    except TaskApiError as e:
      await self.fail(edit, e)
      return None
    self.reconcile(edit, server_item)
    return self.local.item(item_id)

  async def move_item(self, item_id: str, group_id: str, order_index: int | None = None) -> Mapping[str, Any] | None:
    edit = self.begin(item_id, {"group_id": group_id, "order_index": order_index}, kind="move")
    try:
      await self.api.move_item(item_id, group_id=group_id, order_index=order_index)
    except TaskApiError as e:
      await self.fail(edit, e)
      return None
    if self._settle(edit):
      # Neighbours were renumbered too; take the whole board from the server.
      try:
        await self.load()
      except TaskApiError as e:
        await self._recover(e)
    else:
      self._rebuild_local()
    return self.local.item(item_id)

  async def create_item(self, group_id: str, *, name: str, status: str | None = None) -> Mapping[str, Any] | None:
    try:
      created = await self.api.create_item(group_id, name=name, status=status)
    except TaskApiError as e:
      await self._recover(e)
      return None
    self.authoritative = self.authoritative.with_item(created)
    self._rebuild_local()
    return self.local.item(created["id"])

  async def toggle_assignee(self, item_id: str, user_id: str) -> list[Mapping[str, Any]] | None:
    current = {a["user_id"] for a in self.local.assignees_by_item.get(item_id, ())}
    try:
      if user_id in current:
        rows = await self.api.remove_assignee(item_id, user_id)
      else:
        rows = await self.api.add_assignee(item_id, user_id=user_id)
    except TaskApiError as e:
      await self._recover(e)
      return None
    self.authoritative = self.authoritative.with_assignees(item_id, rows)
    self._rebuild_local()
    return list(self.local.assignees_by_item[item_id])
