from __future__ import annotations

import os
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_tasks import store
from anchor_tasks.board_view import board_out, item_out
from anchor_tasks.config import settings
from anchor_tasks.deps import get_current_user, get_db, has_capability, require_board_capability, require_item_capability
from anchor_tasks.editing import Actor, EditSession
from anchor_tasks.errors import Invariant, InvalidReference
from anchor_tasks.labels import load_catalog
from anchor_tasks.models import Assignee, Board, Group, Item, ItemFile, Subitem, TimeEntry, Update, User
from anchor_tasks.rate_limit import limiter
from anchor_tasks.schemas import (
  AssigneeAddIn,
  AssigneeOut,
  FileOut,
  ItemCreateIn,
  ItemMoveIn,
  ItemOut,
  ItemPatchIn,
  SubitemCreateIn,
  SubitemOut,
  SubitemPatchIn,
  TimeAggregateIn,
  TimeEntryCreateIn,
  TimeEntryOut,
  UpdateCreateIn,
  UpdateOut,
)
from anchor_tasks.time_accounting import aggregate, date_window, list_entries, log_time

router = APIRouter(prefix="/tasks", tags=["items"])


async def _item_response(db: AsyncSession, item_id: str) -> ItemOut:
  res = await db.execute(select(Item).where(Item.id == item_id).execution_options(populate_existing=True))
  it = res.scalar_one()
  return ItemOut(**item_out(it, await load_catalog(db, it.board_id)))


def _subitem_out(s: Subitem) -> SubitemOut:
  return SubitemOut(id=s.id, parent_item_id=s.parent_item_id, name=s.name, status=s.status, order_index=s.order_index, created_at=s.created_at)


def _file_out(f: ItemFile) -> FileOut:
  return FileOut(
    id=f.id,
    item_id=f.item_id,
    file_name=f.file_name,
    file_url=f.file_url,
    mime=f.mime,
    size_bytes=f.size_bytes,
    uploaded_by_user_id=f.uploaded_by_user_id,
    uploaded_at=f.uploaded_at,
  )


def _entry_out(e: TimeEntry) -> TimeEntryOut:
  return TimeEntryOut(
    id=e.id,
    item_id=e.item_id,
    user_id=e.user_id,
    minutes=e.minutes,
    billable_minutes=e.billable_minutes,
    is_billable=e.is_billable,
    work_category=e.work_category,
    description=e.description,
    created_at=e.created_at,
  )


async def _assignees(db: AsyncSession, item_id: str) -> list[AssigneeOut]:
  res = await db.execute(
    select(Assignee, User).join(User, User.id == Assignee.user_id).where(Assignee.item_id == item_id).order_by(Assignee.assigned_at.asc(), User.id.asc())
  )
  return [AssigneeOut(item_id=a.item_id, user_id=u.id, name=u.name, email=u.email, assigned_at=a.assigned_at) for a, u in res.all()]


async def _updates(db: AsyncSession, item_id: str) -> list[UpdateOut]:
  res = await db.execute(
    select(Update, User.name)
    .outerjoin(User, User.id == Update.author_user_id)
    .where(Update.item_id == item_id)
    .order_by(Update.created_at.desc(), Update.id.desc())
  )
  return [
    UpdateOut(
      id=u.id,
      item_id=u.item_id,
      author_user_id=u.author_user_id,
      author_name=name,
      body=u.body,
      mentions=list(u.mentions or []),
      is_system=u.is_system,
      created_at=u.created_at,
    )
    for u, name in res.all()
  ]


async def _files(db: AsyncSession, item_id: str) -> list[FileOut]:
  res = await db.execute(select(ItemFile).where(ItemFile.item_id == item_id).order_by(ItemFile.uploaded_at.asc(), ItemFile.id.asc()))
  return [_file_out(f) for f in res.scalars().all()]


# items


@router.post("/groups/{group_id}/items", response_model=ItemOut)
async def create_item(group_id: str, payload: ItemCreateIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> ItemOut:
  g = await store.get(db, Group, group_id)
  b, role = await require_board_capability(g.board_id, "write", user, db)
  session = EditSession(db, Actor.of(user))
  it = await session.create_item(
    b,
    g,
    name=payload.name,
    status=payload.status,
    due_date=payload.due_date,
    create_if_missing=payload.create_if_missing,
    can_manage_labels=has_capability(role, "manage_labels"),
  )
  item_id = it.id
  await session.commit()
  return await _item_response(db, item_id)


@router.get("/items/{item_id}")
async def get_item(item_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
  it, b, _ = await require_item_capability(item_id, "read", user, db)
  catalog = await load_catalog(db, b.id)
  return {
    "item": item_out(it, catalog),
    "board": board_out(b),
    "subitems": [_subitem_out(s) for s in await store.list_ordered(db, Subitem, it.id)],
    "assignees": await _assignees(db, it.id),
    "updates": await _updates(db, it.id),
    "files": await _files(db, it.id),
    "time_entries": [_entry_out(e) for e in await list_entries(db, it.id)],
    "time_totals": (await aggregate(db, item_ids=[it.id])).as_dict(),
  }


@router.patch("/items/{item_id}", response_model=ItemOut)
async def patch_item(item_id: str, payload: ItemPatchIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> ItemOut:
  it, b, role = await require_item_capability(item_id, "write", user, db, for_update=True)
  session = EditSession(db, Actor.of(user))
  await session.patch_item(
    b,
    it,
    payload.patch_fields(),
    create_if_missing=payload.create_if_missing,
    can_manage_labels=has_capability(role, "manage_labels"),
    expected_version=payload.expected_version,
  )
  await session.commit()
  return await _item_response(db, item_id)


@router.post("/items/{item_id}/move", response_model=ItemOut)
async def move_item(item_id: str, payload: ItemMoveIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> ItemOut:
  it, b, _ = await require_item_capability(item_id, "write", user, db, for_update=True)
  target = await store.get_reference(db, Group, payload.group_id, field="group_id")
  session = EditSession(db, Actor.of(user))
  await session.move_item(b, it, target, payload.order_index)
  await session.commit()
  return await _item_response(db, item_id)


@router.post("/items/{item_id}/archive", response_model=ItemOut)
async def archive_item(item_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> ItemOut:
  it, b, _ = await require_item_capability(item_id, "write", user, db, for_update=True)
  session = EditSession(db, Actor.of(user))
  await session.archive_item(b, it)
  await session.commit()
  return await _item_response(db, item_id)


@router.post("/items/{item_id}/restore", response_model=ItemOut)
async def restore_item(item_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> ItemOut:
  it, b, _ = await require_item_capability(item_id, "write", user, db, for_update=True)
  session = EditSession(db, Actor.of(user))
  await session.restore_item(b, it)
  await session.commit()
  return await _item_response(db, item_id)


@router.delete("/items/{item_id}")
async def delete_item(item_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> dict:
  it, b, _ = await require_item_capability(item_id, "write", user, db, for_update=True)
  session = EditSession(db, Actor.of(user))
  await session.delete_item(b, it)
  await session.commit()
  return {"ok": True}


# subitems


@router.get("/items/{item_id}/subitems", response_model=list[SubitemOut])
async def list_subitems(item_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> list[SubitemOut]:
  it, _, _ = await require_item_capability(item_id, "read", user, db)
  return [_subitem_out(s) for s in await store.list_ordered(db, Subitem, it.id)]


@router.post("/items/{item_id}/subitems", response_model=SubitemOut)
async def create_subitem(item_id: str, payload: SubitemCreateIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> SubitemOut:
  it, b, _ = await require_item_capability(item_id, "write", user, db)
  session = EditSession(db, Actor.of(user))
  s = await session.create_subitem(b, it, name=payload.name, status=payload.status)
  subitem_id = s.id
  await session.commit()
  return _subitem_out(await store.get(db, Subitem, subitem_id))


async def _subitem_with_board(db: AsyncSession, subitem_id: str, user: User) -> tuple[Subitem, Board]:
  s = await store.get(db, Subitem, subitem_id)
  _, b, _ = await require_item_capability(s.parent_item_id, "write", user, db)
  return s, b


@router.patch("/subitems/{subitem_id}", response_model=SubitemOut)
async def patch_subitem(subitem_id: str, payload: SubitemPatchIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> SubitemOut:
  s, b = await _subitem_with_board(db, subitem_id, user)
  session = EditSession(db, Actor.of(user))
  await session.patch_subitem(b, s, {k: getattr(payload, k) for k in payload.model_fields_set})
  await session.commit()
  return _subitem_out(await store.get(db, Subitem, subitem_id))


@router.delete("/subitems/{subitem_id}")
async def delete_subitem(subitem_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> dict:
  s, b = await _subitem_with_board(db, subitem_id, user)
  session = EditSession(db, Actor.of(user))
  await session.delete_subitem(b, s)
  await session.commit()
  return {"ok": True}


# assignees


@router.get("/items/{item_id}/assignees", response_model=list[AssigneeOut])
async def list_assignees(item_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> list[AssigneeOut]:
  it, _, _ = await require_item_capability(item_id, "read", user, db)
  return await _assignees(db, it.id)


async def _resolve_user_ref(db: AsyncSession, payload: AssigneeAddIn) -> str:
  if payload.user_id:
    return payload.user_id
  email = (payload.email or "").strip().lower()
  if not email:
    raise Invariant("user_id or email is required")
  res = await db.execute(select(User.id).where(User.email == email))
  user_id = res.scalar_one_or_none()
  if user_id is None:
    raise InvalidReference("Unknown user", details={"email": email})
  return user_id


@router.post("/items/{item_id}/assignees", response_model=list[AssigneeOut])
async def add_assignee(item_id: str, payload: AssigneeAddIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> list[AssigneeOut]:
  it, b, _ = await require_item_capability(item_id, "write", user, db)
  target_id = await _resolve_user_ref(db, payload)
  session = EditSession(db, Actor.of(user))
  await session.add_assignee(b, it, target_id)
  await session.commit()
  return await _assignees(db, item_id)


@router.delete("/items/{item_id}/assignees/{user_id}", response_model=list[AssigneeOut])
async def remove_assignee(item_id: str, user_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> list[AssigneeOut]:
  it, b, _ = await require_item_capability(item_id, "write", user, db)
  session = EditSession(db, Actor.of(user))
  await session.remove_assignee(b, it, user_id)
  await session.commit()
  return await _assignees(db, item_id)


# updates


@router.get("/items/{item_id}/updates", response_model=list[UpdateOut])
async def list_updates(item_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> list[UpdateOut]:
  it, _, _ = await require_item_capability(item_id, "read", user, db)
  return await _updates(db, it.id)


@router.post("/items/{item_id}/updates", response_model=UpdateOut)
async def post_update(item_id: str, payload: UpdateCreateIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> UpdateOut:
  limiter.check("updates", user.id)
  it, b, _ = await require_item_capability(item_id, "write", user, db)
  session = EditSession(db, Actor.of(user))
  u = await session.post_update(b, it, payload.body)
  update_id = u.id
  await session.commit()
  return next(x for x in await _updates(db, item_id) if x.id == update_id)


# files


@router.get("/items/{item_id}/files", response_model=list[FileOut])
async def list_files(item_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> list[FileOut]:
  it, _, _ = await require_item_capability(item_id, "read", user, db)
  return await _files(db, it.id)


@router.post("/items/{item_id}/files", response_model=FileOut)
async def upload_file(
  item_id: str,
  file: UploadFile = File(...),
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> FileOut:
  it, b, _ = await require_item_capability(item_id, "write", user, db)
  original = os.path.basename((file.filename or "").replace("\\", "/")).strip()
  if not original:
    raise Invariant("File name is required")
  data = await file.read()
  if not data or len(data) > settings.max_attachment_bytes:
    raise Invariant("Attachment must be 1B..max_attachment_bytes", details={"max_bytes": settings.max_attachment_bytes})

  os.makedirs(settings.upload_dir, exist_ok=True)
  _, ext = os.path.splitext(original)
  stored = f"{it.id}_{uuid4().hex[:12]}{ext.lower()[:10]}"
  out_path = os.path.join(settings.upload_dir, stored)
  with open(out_path, "wb") as f:
    f.write(data)

  session = EditSession(db, Actor.of(user))
  row = ItemFile(
    item_id=it.id,
    file_name=original,
    file_url="",
    path=out_path,
    mime=(file.content_type or "application/octet-stream").lower(),
    size_bytes=len(data),
    uploaded_by_user_id=user.id,
  )
  await store.create(db, row)
  row.file_url = f"/tasks/files/{row.id}"
  file_id = row.id
  await session.emit("file.uploaded", entity="ItemFile", entity_id=row.id, board=b, item_id=it.id, after={"file_name": original, "size_bytes": len(data)})
  await session.commit()
  return _file_out(await store.get(db, ItemFile, file_id))


@router.get("/files/{file_id}")
async def download_file(file_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> FileResponse:
  f = await store.get(db, ItemFile, file_id)
  await require_item_capability(f.item_id, "read", user, db)
  if not os.path.isfile(f.path):
    raise InvalidReference("Stored file is missing", details={"id": file_id})
  return FileResponse(path=f.path, filename=f.file_name, media_type=f.mime)


# time


@router.get("/items/{item_id}/time-entries", response_model=list[TimeEntryOut])
async def list_time_entries(item_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> list[TimeEntryOut]:
  it, _, _ = await require_item_capability(item_id, "read", user, db)
  return [_entry_out(e) for e in await list_entries(db, it.id)]


@router.post("/items/{item_id}/time-entries", response_model=TimeEntryOut)
async def create_time_entry(item_id: str, payload: TimeEntryCreateIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> TimeEntryOut:
  limiter.check("time_entries", user.id)
  it, b, _ = await require_item_capability(item_id, "write", user, db)
  session = EditSession(db, Actor.of(user))
  entry = await log_time(
    session,
    b,
    it,
    minutes=payload.minutes,
    billable_minutes=payload.billable_minutes,
    is_billable=payload.is_billable,
    work_category=payload.work_category,
    description=payload.description,
  )
  entry_id = entry.id
  await session.commit()
  return _entry_out(await store.get(db, TimeEntry, entry_id))


@router.post("/time/aggregate")
async def time_aggregate(payload: TimeAggregateIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
  window = date_window(payload.start_date, payload.end_date)
  item_ids = list(dict.fromkeys(payload.item_ids))
  for item_id in item_ids:
    await require_item_capability(item_id, "read", user, db)
  agg = await aggregate(db, item_ids=item_ids, window=window, work_category=payload.work_category, user_ids=payload.user_ids)
  return agg.as_dict()


# my work


@router.get("/my-work")
async def my_work(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
  """Every non-archived item the caller is assigned to, grouped by board. Board archival does not hide items."""
  res = await db.execute(
    select(Item, Board)
    .join(Assignee, Assignee.item_id == Item.id)
    .join(Board, Board.id == Item.board_id)
    .where(Assignee.user_id == user.id, Item.archived_at.is_(None))
    .order_by(Board.name.asc(), Board.id.asc(), Item.due_date.is_(None), Item.due_date.asc(), Item.name.asc(), Item.id.asc())
  )
  sections: list[dict[str, Any]] = []
  by_board: dict[str, dict[str, Any]] = {}
  catalogs: dict[str, Any] = {}
  for it, b in res.all():
    if b.id not in by_board:
      catalogs[b.id] = await load_catalog(db, b.id)
      by_board[b.id] = {"board": board_out(b), "items": []}
      sections.append(by_board[b.id])
    by_board[b.id]["items"].append(item_out(it, catalogs[b.id]))
  return {"boards": sections, "total": sum(len(s["items"]) for s in sections)}
