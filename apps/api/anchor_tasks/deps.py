from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_tasks.db import SessionLocal
from anchor_tasks.errors import Forbidden, NotFound, TaskError
from anchor_tasks.models import ApiToken, Board, Item, User, WorkspaceMember, utcnow
from anchor_tasks.security import api_token_hash

# role order: viewer < member < admin < owner
ROLE_ORDER = {"viewer": 0, "member": 1, "admin": 2, "owner": 3}

CAPABILITIES = {
  "read": "viewer",
  "write": "member",
  "manage_labels": "admin",
  "manage_automations": "admin",
  "manage_members": "admin",
  "manage_board": "admin",
}


class Unauthenticated(TaskError):
  kind = "Forbidden"
  status_code = 401


async def get_db() -> AsyncSession:
  async with SessionLocal() as session:
    yield session


async def get_current_user(request: Request, db: AsyncSession = Depends(get_db)) -> User:
  auth = request.headers.get("authorization")
  if not auth or not auth.lower().startswith("bearer "):
    raise Unauthenticated("Not authenticated")
  token = auth.split(" ", 1)[1].strip()
  if not token:
    raise Unauthenticated("Invalid token")
  tres = await db.execute(select(ApiToken).where(ApiToken.token_hash == api_token_hash(token), ApiToken.revoked_at.is_(None)))
  t = tres.scalar_one_or_none()
  if not t:
    raise Unauthenticated("Invalid token")
  ures = await db.execute(select(User).where(User.id == t.user_id))
  u = ures.scalar_one_or_none()
  if not u:
    raise Unauthenticated("User not found")
  if not u.active:
    raise Forbidden("User disabled")
  t.last_used_at = utcnow()
  await db.commit()
  return u


async def membership_role(workspace_id: str, user_id: str, db: AsyncSession) -> str | None:
  res = await db.execute(
    select(WorkspaceMember.role).where(WorkspaceMember.workspace_id == workspace_id, WorkspaceMember.user_id == user_id)
  )
  return res.scalar_one_or_none()


async def require_workspace_role(workspace_id: str, min_role: str, user: User, db: AsyncSession) -> str:
  role = await membership_role(workspace_id, user.id, db)
  if role is None:
    raise Forbidden("No workspace access", details={"workspace_id": workspace_id})
  if ROLE_ORDER.get(role, -1) < ROLE_ORDER.get(min_role, 0):
    raise Forbidden("Insufficient role", details={"required": min_role, "role": role})
  return role


def has_capability(role: str | None, capability: str) -> bool:
  if role is None:
    return False
  return ROLE_ORDER.get(role, -1) >= ROLE_ORDER[CAPABILITIES[capability]]


async def load_board(board_id: str, db: AsyncSession) -> Board:
  res = await db.execute(select(Board).where(Board.id == board_id))
  b = res.scalar_one_or_none()
  if not b:
    raise NotFound("Board not found", details={"board_id": board_id})
  return b


async def require_board_capability(board_id: str, capability: str, user: User, db: AsyncSession) -> tuple[Board, str]:
  b = await load_board(board_id, db)
  role = await require_workspace_role(b.workspace_id, CAPABILITIES[capability], user, db)
  return b, role


async def require_item_capability(item_id: str, capability: str, user: User, db: AsyncSession, *, for_update: bool = False) -> tuple[Item, Board, str]:
  q = select(Item).where(Item.id == item_id)
  if for_update:
    q = q.with_for_update()
  res = await db.execute(q)
  it = res.scalar_one_or_none()
  if not it:
    raise NotFound("Item not found", details={"item_id": item_id})
  b, role = await require_board_capability(it.board_id, capability, user, db)
  return it, b, role
