from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_tasks import store
from anchor_tasks.board_view import begin_snapshot, board_out, group_out, label_out, project
from anchor_tasks.deps import (
  get_current_user,
  get_db,
  require_board_capability,
  require_workspace_role,
)
from anchor_tasks.editing import Actor, EditSession
from anchor_tasks.errors import InvalidReference, NotFound
from anchor_tasks.labels import ensure_default_labels, load_catalog
from anchor_tasks.models import Board, Group, StatusLabel, User, Workspace, WorkspaceMember, utcnow
from anchor_tasks.reports.csv_export import BILLING_HEADER, billing_filename, billing_records, encode_rows
from anchor_tasks.reports.service import billing_rows
from anchor_tasks.schemas import (
  BoardCreateIn,
  BoardOut,
  BoardPatchIn,
  GroupCreateIn,
  GroupOut,
  GroupPatchIn,
  GroupReorderIn,
  LabelCreateIn,
  LabelOut,
  LabelPatchIn,
)
from anchor_tasks.time_accounting import date_window

router = APIRouter(prefix="/tasks", tags=["boards"])


@router.get("/boards", response_model=list[BoardOut])
async def list_boards(
  workspace: str | None = Query(default=None),
  include_archived: bool = False,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> list[BoardOut]:
  q = select(Board)
  if workspace:
    await store.get(db, Workspace, workspace)
    await require_workspace_role(workspace, "viewer", user, db)
    q = q.where(Board.workspace_id == workspace)
  else:
    mine = select(WorkspaceMember.workspace_id).where(WorkspaceMember.user_id == user.id)
    q = q.where(Board.workspace_id.in_(mine))
  if not include_archived:
    q = q.where(Board.archived_at.is_(None))
  res = await db.execute(q.order_by(Board.name.asc(), Board.created_at.asc(), Board.id.asc()))
  return [BoardOut(**board_out(b)) for b in res.scalars().all()]


@router.post("/boards", response_model=BoardOut)
async def create_board(payload: BoardCreateIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> BoardOut:
  res = await db.execute(select(Workspace).where(Workspace.id == payload.workspace_id))
  if res.scalar_one_or_none() is None:
    raise InvalidReference("Unknown workspace", details={"workspace_id": payload.workspace_id})
  await require_workspace_role(payload.workspace_id, "member", user, db)
  await ensure_default_labels(db)
  session = EditSession(db, Actor.of(user))
  b = await session.create_board(workspace_id=payload.workspace_id, name=payload.name, description=payload.description)
  await session.commit()
  return BoardOut(**board_out(await store.get(db, Board, b.id)))


@router.patch("/boards/{board_id}", response_model=BoardOut)
async def patch_board(board_id: str, payload: BoardPatchIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> BoardOut:
  b, _ = await require_board_capability(board_id, "manage_board", user, db)
  session = EditSession(db, Actor.of(user))
  fields = {k: getattr(payload, k) for k in payload.model_fields_set if k != "archived"}
  await session.patch_board(b, fields)
  if payload.archived is True:
    await store.archive(db, b)
  elif payload.archived is False:
    await store.restore(db, b)
  await session.commit()
  return BoardOut(**board_out(await store.get(db, Board, board_id)))


@router.delete("/boards/{board_id}")
async def delete_board(board_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> dict:
  b, _ = await require_board_capability(board_id, "manage_board", user, db)
  session = EditSession(db, Actor.of(user))
  await session.delete_board(b)
  await session.commit()
  return {"ok": True}


@router.get("/boards/{board_id}/view")
async def board_view(
  board_id: str,
  search: str | None = None,
  include_archived: bool = False,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> dict:
  await begin_snapshot(db)
  b, _ = await require_board_capability(board_id, "read", user, db)
  return await project(db, b, search=search, include_archived=include_archived)


# groups


@router.post("/boards/{board_id}/groups", response_model=GroupOut)
async def create_group(board_id: str, payload: GroupCreateIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> GroupOut:
  b, _ = await require_board_capability(board_id, "write", user, db)
  session = EditSession(db, Actor.of(user))
  g = await session.create_group(b, name=payload.name, order_index=payload.order_index, color=payload.color)
  await session.commit()
  return GroupOut(**group_out(await store.get(db, Group, g.id)))


@router.post("/boards/{board_id}/groups/reorder", response_model=list[GroupOut])
async def reorder_groups(board_id: str, payload: GroupReorderIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> list[GroupOut]:
  b, _ = await require_board_capability(board_id, "write", user, db)
  session = EditSession(db, Actor.of(user))
  await session.reorder_groups(b, payload.group_ids)
  await session.commit()
  return [GroupOut(**group_out(g)) for g in await store.list_ordered(db, Group, board_id)]


async def _group_with_board(db: AsyncSession, group_id: str, capability: str, user: User) -> tuple[Group, Board]:
  g = await store.get(db, Group, group_id)
  b, _ = await require_board_capability(g.board_id, capability, user, db)
  return g, b


@router.patch("/groups/{group_id}", response_model=GroupOut)
async def patch_group(group_id: str, payload: GroupPatchIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> GroupOut:
  g, b = await _group_with_board(db, group_id, "write", user)
  session = EditSession(db, Actor.of(user))
  await session.patch_group(b, g, {k: getattr(payload, k) for k in payload.model_fields_set})
  await session.commit()
  return GroupOut(**group_out(await store.get(db, Group, group_id)))


@router.delete("/groups/{group_id}")
async def delete_group(group_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> dict:
  g, b = await _group_with_board(db, group_id, "write", user)
  session = EditSession(db, Actor.of(user))
  removed = await session.delete_group(b, g)
  await session.commit()
  return {"ok": True, "items_deleted": removed}


# labels


@router.get("/boards/{board_id}/labels", response_model=list[LabelOut])
async def list_labels(board_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> list[LabelOut]:
  await require_board_capability(board_id, "read", user, db)
  catalog = await load_catalog(db, board_id)
  return [LabelOut(**label_out(lbl)) for lbl in catalog.labels]


@router.post("/boards/{board_id}/labels", response_model=LabelOut)
async def create_label(board_id: str, payload: LabelCreateIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> LabelOut:
  b, _ = await require_board_capability(board_id, "manage_labels", user, db)
  session = EditSession(db, Actor.of(user))
  lbl = await session.create_label(b, label=payload.label, color=payload.color, is_done_state=payload.is_done_state)
  await session.commit()
  return LabelOut(**label_out(await store.get(db, StatusLabel, lbl.id)))


async def _board_label(db: AsyncSession, label_id: str, user: User) -> tuple[StatusLabel, Board]:
  lbl = await store.get(db, StatusLabel, label_id)
  if lbl.board_id is None:
    raise NotFound("StatusLabel not found", details={"id": label_id})
  b, _ = await require_board_capability(lbl.board_id, "manage_labels", user, db)
  return lbl, b


@router.patch("/labels/{label_id}", response_model=LabelOut)
async def patch_label(label_id: str, payload: LabelPatchIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> LabelOut:
  lbl, b = await _board_label(db, label_id, user)
  session = EditSession(db, Actor.of(user))
  await session.patch_label(b, lbl, {k: getattr(payload, k) for k in payload.model_fields_set})
  await session.commit()
  return LabelOut(**label_out(await store.get(db, StatusLabel, label_id)))


@router.delete("/labels/{label_id}")
async def delete_label(label_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> dict:
  lbl, b = await _board_label(db, label_id, user)
  session = EditSession(db, Actor.of(user))
  await session.archive_label(b, lbl)
  await session.commit()
  return {"ok": True}


# export


@router.get("/boards/{board_id}/export.csv")
async def export_billing_csv(
  board_id: str,
  start_date: date | None = None,
  end_date: date | None = None,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> StreamingResponse:
  b, _ = await require_board_capability(board_id, "read", user, db)
  rows = await billing_rows(db, [b], date_window(start_date, end_date))
  filename = billing_filename(b.name, utcnow().date())
  return StreamingResponse(
    encode_rows(BILLING_HEADER, billing_records(rows)),
    media_type="text/csv; charset=utf-8",
    headers={"Content-Disposition": f'attachment; filename="{filename}"'},
  )
