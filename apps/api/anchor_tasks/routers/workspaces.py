from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_tasks import store
from anchor_tasks.audit import write_audit
from anchor_tasks.board_view import workspace_members
from anchor_tasks.deps import get_current_user, get_db, require_workspace_role
from anchor_tasks.errors import Conflict, Forbidden, InvalidReference, NotFound
from anchor_tasks.models import User, Workspace, WorkspaceMember
from anchor_tasks.schemas import MemberAddIn, MemberOut, MemberPatchIn, UserOut, WorkspaceCreateIn, WorkspaceOut

router = APIRouter(prefix="/tasks/workspaces", tags=["workspaces"])


@router.get("", response_model=list[WorkspaceOut])
async def list_workspaces(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> list[WorkspaceOut]:
  res = await db.execute(
    select(Workspace, WorkspaceMember.role)
    .join(WorkspaceMember, WorkspaceMember.workspace_id == Workspace.id)
    .where(WorkspaceMember.user_id == user.id)
    .order_by(Workspace.name.asc(), Workspace.id.asc())
  )
  return [WorkspaceOut(id=w.id, name=w.name, role=role, created_at=w.created_at) for w, role in res.all()]


@router.post("", response_model=WorkspaceOut)
async def create_workspace(payload: WorkspaceCreateIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> WorkspaceOut:
  w = await store.create(db, Workspace(name=payload.name.strip()))
  await store.create(db, WorkspaceMember(workspace_id=w.id, user_id=user.id, role="owner"))
  await write_audit(db, event_type="workspace.created", entity_type="Workspace", entity_id=w.id, workspace_id=w.id, actor_id=user.id, payload={"name": w.name})
  await db.commit()
  return WorkspaceOut(id=w.id, name=w.name, role="owner", created_at=w.created_at)


@router.get("/{workspace_id}/members", response_model=list[MemberOut])
async def list_members(workspace_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> list[MemberOut]:
  await store.get(db, Workspace, workspace_id)
  await require_workspace_role(workspace_id, "viewer", user, db)
  return [MemberOut(**m) for m in await workspace_members(db, workspace_id)]


@router.get("/{workspace_id}/members/search", response_model=list[UserOut])
async def search_users(workspace_id: str, q: str = "", user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> list[UserOut]:
  """Directory lookup for adding members; excludes current members."""
  await require_workspace_role(workspace_id, "admin", user, db)
  needle = f"%{q.strip().lower()}%"
  members = select(WorkspaceMember.user_id).where(WorkspaceMember.workspace_id == workspace_id)
  res = await db.execute(
    select(User)
    .where(User.active.is_(True), User.id.not_in(members))
    .where((func.lower(User.email).like(needle)) | (func.lower(User.name).like(needle)))
    .order_by(User.name.asc())
    .limit(20)
  )
  return [UserOut(id=u.id, name=u.name, email=u.email, handle=u.handle) for u in res.scalars().all()]


async def _member(db: AsyncSession, workspace_id: str, user_id: str) -> WorkspaceMember:
  res = await db.execute(select(WorkspaceMember).where(WorkspaceMember.workspace_id == workspace_id, WorkspaceMember.user_id == user_id))
  m = res.scalar_one_or_none()
  if not m:
    raise NotFound("Member not found", details={"user_id": user_id})
  return m


async def _owner_count(db: AsyncSession, workspace_id: str) -> int:
  res = await db.execute(
    select(func.count(WorkspaceMember.id)).where(WorkspaceMember.workspace_id == workspace_id, WorkspaceMember.role == "owner")
  )
  return int(res.scalar_one())


@router.post("/{workspace_id}/members", response_model=MemberOut)
async def add_member(workspace_id: str, payload: MemberAddIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> MemberOut:
  await store.get(db, Workspace, workspace_id)
  actor_role = await require_workspace_role(workspace_id, "admin", user, db)
  if payload.role == "owner" and actor_role != "owner":
    raise Forbidden("Only owners can add owners")
  if payload.user_id:
    ures = await db.execute(select(User).where(User.id == payload.user_id))
  elif payload.email:
    ures = await db.execute(select(User).where(func.lower(User.email) == payload.email.strip().lower()))
  else:
    raise InvalidReference("user_id or email is required")
  u = ures.scalar_one_or_none()
  if not u:
    raise InvalidReference("Unknown user", details={"user_id": payload.user_id, "email": payload.email})
  exists = await db.execute(select(WorkspaceMember.id).where(WorkspaceMember.workspace_id == workspace_id, WorkspaceMember.user_id == u.id))
  if exists.first() is not None:
    raise Conflict("User is already a member", details={"user_id": u.id})
  m = await store.create(db, WorkspaceMember(workspace_id=workspace_id, user_id=u.id, role=payload.role))
  await write_audit(db, event_type="member.added", entity_type="WorkspaceMember", entity_id=m.id, workspace_id=workspace_id, actor_id=user.id, payload={"user_id": u.id, "role": m.role})
  await db.commit()
  return MemberOut(user_id=u.id, name=u.name, email=u.email, handle=u.handle, role=m.role, joined_at=m.created_at)


@router.patch("/{workspace_id}/members/{user_id}", response_model=MemberOut)
async def patch_member(
  workspace_id: str,
  user_id: str,
  payload: MemberPatchIn,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> MemberOut:
  actor_role = await require_workspace_role(workspace_id, "admin", user, db)
  m = await _member(db, workspace_id, user_id)
  if "owner" in (payload.role, m.role) and actor_role != "owner":
    raise Forbidden("Only owners can grant or revoke owner")
  if m.role == "owner" and payload.role != "owner" and await _owner_count(db, workspace_id) <= 1:
    raise Conflict("A workspace needs at least one owner")
  before = m.role
  m.role = payload.role
  await write_audit(db, event_type="member.role_changed", entity_type="WorkspaceMember", entity_id=m.id, workspace_id=workspace_id, actor_id=user.id, payload={"user_id": user_id, "from": before, "to": m.role})
  await db.commit()
  u = await store.get(db, User, user_id)
  return MemberOut(user_id=u.id, name=u.name, email=u.email, handle=u.handle, role=m.role, joined_at=m.created_at)


@router.delete("/{workspace_id}/members/{user_id}")
async def remove_member(workspace_id: str, user_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> dict:
  actor_role = await require_workspace_role(workspace_id, "admin", user, db)
  m = await _member(db, workspace_id, user_id)
  if m.role == "owner":
    if actor_role != "owner":
      raise Forbidden("Only owners can remove owners")
    if await _owner_count(db, workspace_id) <= 1:
      raise Conflict("A workspace needs at least one owner")
  await db.delete(m)
  await write_audit(db, event_type="member.removed", entity_type="WorkspaceMember", entity_id=m.id, workspace_id=workspace_id, actor_id=user.id, payload={"user_id": user_id})
  await db.commit()
  return {"ok": True}
