from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_tasks import store
from anchor_tasks.audit import write_audit
from anchor_tasks.automations.rules import validate_rule
from anchor_tasks.deps import get_current_user, get_db, require_board_capability
from anchor_tasks.errors import InvalidReference
from anchor_tasks.models import AutomationLog, AutomationRule, Board, Group, User, utcnow
from anchor_tasks.schemas import AutomationCreateIn, AutomationLogOut, AutomationOut, AutomationPatchIn

router = APIRouter(prefix="/tasks", tags=["automations"])

RULE_FIELDS = ("name", "trigger_type", "trigger_config", "condition", "action_type", "action_config", "is_active")


def _rule_out(r: AutomationRule) -> AutomationOut:
  return AutomationOut(
    id=r.id,
    board_id=r.board_id,
    name=r.name,
    trigger_type=r.trigger_type,
    trigger_config=r.trigger_config or {},
    condition=r.condition,
    action_type=r.action_type,
    action_config=r.action_config or {},
    is_active=r.is_active,
    created_by=r.created_by,
    created_at=r.created_at,
    updated_at=r.updated_at,
  )


async def _check_rule(db: AsyncSession, b: Board, fields: dict[str, Any]) -> None:
  validate_rule(
    trigger_type=fields["trigger_type"],
    trigger_config=fields["trigger_config"] or {},
    condition=fields["condition"],
    action_type=fields["action_type"],
    action_config=fields["action_config"] or {},
  )
  if fields["action_type"] == "move_to_group":
    group_id = str(fields["action_config"]["group_id"])
    res = await db.execute(select(Group.id).where(Group.id == group_id, Group.board_id == b.id))
    if res.scalar_one_or_none() is None:
      raise InvalidReference("move_to_group target must be a group on this board", details={"group_id": group_id})


@router.get("/boards/{board_id}/automations", response_model=list[AutomationOut])
async def list_rules(board_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> list[AutomationOut]:
  await require_board_capability(board_id, "read", user, db)
  res = await db.execute(
    select(AutomationRule).where(AutomationRule.board_id == board_id).order_by(AutomationRule.created_at.asc(), AutomationRule.id.asc())
  )
  return [_rule_out(r) for r in res.scalars().all()]


@router.post("/boards/{board_id}/automations", response_model=AutomationOut)
async def create_rule(board_id: str, payload: AutomationCreateIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> AutomationOut:
  b, _ = await require_board_capability(board_id, "manage_automations", user, db)
  fields = payload.model_dump()
  fields["name"] = fields["name"].strip()
  await _check_rule(db, b, fields)
  r = await store.create(db, AutomationRule(board_id=b.id, created_by=user.id, **fields))
  await write_audit(
    db,
    event_type="automation.created",
    entity_type="AutomationRule",
    entity_id=r.id,
    workspace_id=b.workspace_id,
    board_id=b.id,
    actor_id=user.id,
    payload={"name": r.name, "trigger_type": r.trigger_type, "action_type": r.action_type},
  )
  await db.commit()
  return _rule_out(r)


async def _rule_with_board(db: AsyncSession, rule_id: str, capability: str, user: User) -> tuple[AutomationRule, Board]:
  r = await store.get(db, AutomationRule, rule_id)
  b, _ = await require_board_capability(r.board_id, capability, user, db)
  return r, b


@router.patch("/automations/{rule_id}", response_model=AutomationOut)
async def patch_rule(rule_id: str, payload: AutomationPatchIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> AutomationOut:
  r, b = await _rule_with_board(db, rule_id, "manage_automations", user)
  sent = {k: getattr(payload, k) for k in payload.model_fields_set if k in RULE_FIELDS}
  sent = {k: v for k, v in sent.items() if v is not None or k == "condition"}
  if "name" in sent:
    sent["name"] = sent["name"].strip()
  merged = {k: sent.get(k, getattr(r, k)) for k in RULE_FIELDS}
  await _check_rule(db, b, merged)
  changes = store.patch(r, sent)
  if changes:
    r.updated_at = utcnow()
  await write_audit(
    db,
    event_type="automation.updated",
    entity_type="AutomationRule",
    entity_id=r.id,
    workspace_id=b.workspace_id,
    board_id=b.id,
    actor_id=user.id,
    payload={"changed": sorted(changes)},
  )
  await db.commit()
  return _rule_out(r)


@router.delete("/automations/{rule_id}")
async def delete_rule(rule_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> dict:
  r, b = await _rule_with_board(db, rule_id, "manage_automations", user)
  name = r.name
  await store.hard_delete(db, AutomationRule, r.id)
  await write_audit(
    db,
    event_type="automation.deleted",
    entity_type="AutomationRule",
    entity_id=rule_id,
    workspace_id=b.workspace_id,
    board_id=b.id,
    actor_id=user.id,
    payload={"name": name},
  )
  await db.commit()
  return {"ok": True}


@router.get("/automations/{rule_id}/logs", response_model=list[AutomationLogOut])
async def rule_logs(
  rule_id: str,
  limit: int = Query(default=100, ge=1, le=500),
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> list[AutomationLogOut]:
  await _rule_with_board(db, rule_id, "read", user)
  res = await db.execute(
    select(AutomationLog).where(AutomationLog.rule_id == rule_id).order_by(AutomationLog.fired_at.desc(), AutomationLog.id.desc()).limit(limit)
  )
  return [
    AutomationLogOut(id=x.id, rule_id=x.rule_id, item_id=x.item_id, fired_at=x.fired_at, outcome=x.outcome, detail=x.detail)
    for x in res.scalars().all()
  ]
