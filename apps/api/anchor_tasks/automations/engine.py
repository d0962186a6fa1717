from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_tasks.automations.rules import EVENT_TRIGGERS, RuleView, condition_holds, set_field_patch, trigger_matches
from anchor_tasks.config import settings
from anchor_tasks.editing import SYSTEM_ACTOR, CausalChain, ChangeEvent, EditSession, item_snapshot
from anchor_tasks.errors import InvalidReference, TaskError
from anchor_tasks.labels import load_catalog
from anchor_tasks.metrics import runtime_metrics
from anchor_tasks.models import (
  Assignee,
  AutomationLog,
  AutomationRule,
  Board,
  Group,
  Item,
  WorkspaceMember,
  utcnow,
)
from anchor_tasks.notifications.events import item_link, notify_users, schedule_dispatch, workspace_admin_ids

logger = logging.getLogger(__name__)


@dataclass
class RuleOutcome:
  outcome: str
  detail: str
  events: list[ChangeEvent] = field(default_factory=list)
  notification_ids: list[str] = field(default_factory=list)


def render_template(template: str, *, item: Item, actor: str) -> str:
  """Substitute {item.name}, {actor}, {status} and {due_date}; other braces are left alone."""
  out = template or ""
  for token, value in (
    ("{item.name}", item.name),
    ("{actor}", actor),
    ("{status}", item.status),
    ("{due_date}", item.due_date.isoformat() if item.due_date else ""),
  ):
    out = out.replace(token, value)
  return out


async def _active_rules(db: AsyncSession, board_id: str, trigger_types: tuple[str, ...]) -> list[RuleView]:
  res = await db.execute(
    select(AutomationRule)
    .where(
      AutomationRule.board_id == board_id,
      AutomationRule.is_active.is_(True),
      AutomationRule.trigger_type.in_(trigger_types),
    )
    .order_by(AutomationRule.created_at.asc(), AutomationRule.id.asc())
  )
  return [RuleView.of(r) for r in res.scalars().all()]


async def _load_item_and_board(db: AsyncSession, item_id: str) -> tuple[Item | None, Board | None]:
  ires = await db.execute(select(Item).where(Item.id == item_id).execution_options(populate_existing=True))
  it = ires.scalar_one_or_none()
  if it is None:
    return None, None
  bres = await db.execute(select(Board).where(Board.id == it.board_id).execution_options(populate_existing=True))
  return it, bres.scalar_one_or_none()


async def _assignee_ids(db: AsyncSession, item_id: str) -> list[str]:
  res = await db.execute(select(Assignee.user_id).where(Assignee.item_id == item_id).order_by(Assignee.assigned_at.asc()))
  return [row.user_id for row in res.all()]


async def _workspace_member_ids(db: AsyncSession, workspace_id: str) -> set[str]:
  res = await db.execute(select(WorkspaceMember.user_id).where(WorkspaceMember.workspace_id == workspace_id))
  return {row.user_id for row in res.all()}


async def _notify(
  db: AsyncSession,
  rule: RuleView,
  item: Item,
  board: Board,
  ev: ChangeEvent,
  recipients: list[str],
) -> RuleOutcome:
  cfg = rule.action_config
  if rule.trigger_type == "status_change":
    default_title = f"Task status updated: {item.status}"
  elif rule.trigger_type == "due_soon":
    default_title = f"Task due soon: {item.name}"
  else:
    default_title = rule.name
  title = render_template(cfg.get("title") or default_title, item=item, actor=ev.actor.name)
  body = render_template(cfg.get("body") or item.name, item=item, actor=ev.actor.name)
  link = render_template(cfg["link_url"], item=item, actor=ev.actor.name) if cfg.get("link_url") else item_link(board.id, item.id)
  if not recipients:
    return RuleOutcome("skipped", "no recipients")
  notes = await notify_users(
    db,
    user_ids=recipients,
    title=title,
    body=body,
    link_url=link,
    dedupe_prefix=f"rule:{rule.id}:{item.id}",
  )
  delivered = sum(1 for n in notes if n.delivered)
  return RuleOutcome("delivered", f"notified {delivered}/{len(notes)} users", notification_ids=[n.id for n in notes if n.delivered])


async def _execute(db: AsyncSession, rule: RuleView, item: Item, board: Board, ev: ChangeEvent, chain: CausalChain) -> RuleOutcome:
  cfg = rule.action_config
  kind = rule.action_type

  if kind == "notify_admins":
    return await _notify(db, rule, item, board, ev, await workspace_admin_ids(db, board.workspace_id))
  if kind == "notify_assignees":
    return await _notify(db, rule, item, board, ev, await _assignee_ids(db, item.id))
  if kind == "notify_users":
    members = await _workspace_member_ids(db, board.workspace_id)
    wanted = [str(u) for u in cfg.get("user_ids") or []]
    outside = [u for u in wanted if u not in members]
    outcome = await _notify(db, rule, item, board, ev, [u for u in wanted if u in members])
    if outside:
      outcome.detail += f"; skipped {len(outside)} non-member users"
    return outcome

  session = EditSession(db, SYSTEM_ACTOR, chain=chain)
  if kind == "set_field":
    patch = set_field_patch(cfg)
    await session.patch_item(board, item, patch)
    detail = "set " + ", ".join(sorted(patch))
  elif kind == "move_to_group":
    gres = await db.execute(select(Group).where(Group.id == cfg.get("group_id"), Group.board_id == board.id))
    target = gres.scalar_one_or_none()
    if target is None:
      raise InvalidReference("move_to_group target group not found on board", details={"group_id": cfg.get("group_id")})
    await session.move_item(board, item, target)
    detail = f"moved to group {target.name}"
  elif kind == "post_update":
    body = render_template(cfg.get("body") or "", item=item, actor=ev.actor.name)
    await session.post_update(board, item, body, is_system=True)
    detail = "posted update"
  else:
    raise InvalidReference("Unknown action_type", details={"action_type": kind})
  return RuleOutcome("delivered", detail, events=session.take_events(), notification_ids=session.notification_ids)


def _facts(item: Item, assignee_ids: list[str]) -> dict:
  facts = item_snapshot(item)
  facts["assignee_ids"] = assignee_ids
  return facts


async def _log(db: AsyncSession, rule_id: str, item_id: str | None, outcome: str, detail: str, fingerprint: str | None) -> None:
  db.add(AutomationLog(rule_id=rule_id, item_id=item_id, outcome=outcome, detail=detail[:2000], fingerprint=fingerprint))
  runtime_metrics.observe_automation(outcome)


async def evaluate_rule(
  db: AsyncSession,
  rule: RuleView,
  ev: ChangeEvent,
  chain: CausalChain,
  *,
  fingerprint: str | None = None,
) -> RuleOutcome:
  """
  Run one matched rule against the event's item and commit the result.

  Exactly one AutomationLog row is written. An action error rolls back the
  action's own writes and is logged as failed; it is never raised.
  """
  if rule.id in chain.fired:
    result = RuleOutcome("skipped", "recursion guard: rule already fired in this causal chain")
    await _log(db, rule.id, ev.item_id, result.outcome, result.detail, fingerprint)
    await db.commit()
    return result
  item, board = await _load_item_and_board(db, ev.item_id) if ev.item_id else (None, None)
  try:
    if item is None or board is None:
      result = RuleOutcome("skipped", "item no longer exists")
    elif not condition_holds(rule.condition, _facts(item, await _assignee_ids(db, item.id))):
      result = RuleOutcome("skipped", "condition not met")
    else:
      chain.fired.add(rule.id)
      result = await _execute(db, rule, item, board, ev, chain)
    await _log(db, rule.id, ev.item_id, result.outcome, result.detail, fingerprint)
    await db.commit()
    return result
  except Exception as e:
    await db.rollback()
    detail = f"{e.kind}: {e.message}" if isinstance(e, TaskError) else f"{type(e).__name__}: {e}"
    logger.warning("automation rule %s failed on item %s: %s", rule.id, ev.item_id, detail)
    result = RuleOutcome("failed", detail)
    await _log(db, rule.id, ev.item_id, "failed", detail, fingerprint)
    if settings.automation_failure_notify_admins:
      result.notification_ids = await _notify_failure(db, rule, ev, detail)
    await db.commit()
    return result


async def _notify_failure(db: AsyncSession, rule: RuleView, ev: ChangeEvent, detail: str) -> list[str]:
  bres = await db.execute(select(Board).where(Board.id == rule.board_id))
  board = bres.scalar_one_or_none()
  if board is None:
    return []
  link = item_link(board.id, ev.item_id) if ev.item_id else f"/tasks?pane=automations&board={board.id}"
  notes = await notify_users(
    db,
    user_ids=await workspace_admin_ids(db, board.workspace_id),
    title=f"Automation failed: {rule.name}",
    body=detail,
    link_url=link,
    dedupe_prefix=f"automation-failed:{rule.id}:{ev.item_id}",
  )
  return [n.id for n in notes if n.delivered]


async def process_events(db: AsyncSession, events: list[ChangeEvent], *, chain: CausalChain) -> list[str]:
  """
  Feed committed change events to the automation engine, in order.

  Events produced by actions are appended to the same queue and share the
  causal chain, so a rule never re-fires on its own output.
  """
  notes: list[str] = []
  queue: deque[tuple[ChangeEvent, int]] = deque((ev, 0) for ev in events)
  while queue:
    ev, depth = queue.popleft()
    triggers = EVENT_TRIGGERS.get(ev.kind)
    if not triggers or not ev.board_id:
      continue
    try:
      rules = await _active_rules(db, ev.board_id, triggers)
    except Exception:
      logger.exception("loading automation rules failed for board %s", ev.board_id)
      await db.rollback()
      continue
    matched = [rule for rule in rules if trigger_matches(rule, ev)]
    if depth > settings.automation_max_chain_depth:
      if matched:
        logger.warning("automation chain depth exceeded at %s for item %s", ev.kind, ev.item_id)
        for rule in matched:
          await _log(db, rule.id, ev.item_id, "skipped", f"chain depth limit reached ({settings.automation_max_chain_depth})", None)
        await db.commit()
      continue
    for rule in matched:
      result = await evaluate_rule(db, rule, ev, chain)
      notes.extend(result.notification_ids)
      queue.extend((child, depth + 1) for child in result.events)
  return notes


def _due_soon_event(item: Item) -> ChangeEvent:
  snap = item_snapshot(item)
  return ChangeEvent(
    kind="item.due_soon",
    entity="Item",
    entity_id=item.id,
    board_id=item.board_id,
    item_id=item.id,
    before=None,
    after=snap,
    actor=SYSTEM_ACTOR,
    at=utcnow(),
  )


async def run_due_soon_sweep(db: AsyncSession, *, now: datetime | None = None, limit: int = 500) -> int:
  """
  Fire due_soon rules for items due inside each rule's window.

  Each (rule, item, due_date) fires at most once: the AutomationLog
  fingerprint records it. Returns the number of rule firings.
  """
  now = now or utcnow()
  res = await db.execute(
    select(AutomationRule)
    .where(AutomationRule.is_active.is_(True), AutomationRule.trigger_type == "due_soon")
    .order_by(AutomationRule.created_at.asc())
  )
  rules = [RuleView.of(r) for r in res.scalars().all()]
  fired = 0
  notes: list[str] = []
  for rule in rules:
    window = float(rule.trigger_config.get("window_hours") or settings.due_soon_default_window_hours)
    horizon = (now + timedelta(hours=window)).date()
    catalog = await load_catalog(db, rule.board_id)
    ires = await db.execute(
      select(Item)
      .where(
        Item.board_id == rule.board_id,
        Item.archived_at.is_(None),
        Item.due_date.is_not(None),
        Item.due_date >= now.date(),
        Item.due_date <= horizon,
      )
      .order_by(Item.due_date.asc(), Item.id.asc())
      .limit(limit)
    )
    candidates = []
    for it in ires.scalars().all():
      lbl = catalog.resolve_for_read(it)
      if lbl is not None and lbl.is_done_state:
        continue
      candidates.append((_due_soon_event(it), f"due_soon:{rule.id}:{it.id}:{it.due_date.isoformat()}"))
    for ev, fingerprint in candidates:
      seen = await db.execute(select(AutomationLog.id).where(AutomationLog.fingerprint == fingerprint).limit(1))
      if seen.first() is not None:
        continue
      chain = CausalChain()
      result = await evaluate_rule(db, rule, ev, chain, fingerprint=fingerprint)
      fired += 1
      notes.extend(result.notification_ids)
      if result.events:
        notes.extend(await process_events(db, result.events, chain=chain))
  schedule_dispatch(notes)
  return fired
