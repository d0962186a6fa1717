from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any

from anchor_tasks.editing import ChangeEvent
from anchor_tasks.errors import Invariant
from anchor_tasks.models import AutomationRule

TRIGGER_TYPES = ("status_change", "field_change", "item_created", "item_archived", "due_soon", "update_mention")
ACTION_TYPES = ("notify_admins", "notify_assignees", "notify_users", "set_field", "move_to_group", "post_update")

WATCHED_FIELDS = ("name", "status", "due_date", "needs_attention", "is_voicemail", "group_id")
SETTABLE_FIELDS = ("name", "status", "due_date", "needs_attention", "is_voicemail")
CONDITION_OPS = ("eq", "neq", "in", "not_in", "contains", "is_set", "is_not_set", "before", "after")
CONDITION_FIELDS = WATCHED_FIELDS + ("assignee_ids",)

# Event kind -> trigger types it can satisfy.
EVENT_TRIGGERS: dict[str, tuple[str, ...]] = {
  "item.created": ("item_created",),
  "item.updated": ("status_change", "field_change"),
  "item.moved": ("field_change",),
  "item.archived": ("item_archived",),
  "item.due_soon": ("due_soon",),
  "update.created": ("update_mention",),
}


@dataclass(frozen=True)
class RuleView:
  """Detached copy of a rule row; safe to read after the session rolls back."""

  id: str
  board_id: str
  name: str
  trigger_type: str
  trigger_config: dict[str, Any]
  condition: dict[str, Any] | None
  action_type: str
  action_config: dict[str, Any]

  @classmethod
  def of(cls, r: AutomationRule) -> "RuleView":
    return cls(
      id=r.id,
      board_id=r.board_id,
      name=r.name,
      trigger_type=r.trigger_type,
      trigger_config=dict(r.trigger_config or {}),
      condition=dict(r.condition) if r.condition else None,
      action_type=r.action_type,
      action_config=dict(r.action_config or {}),
    )


def _same_status(expected: Any, actual: str | None, label_id: str | None) -> bool:
  if expected is None:
    return True
  exp = str(expected).strip()
  if label_id and exp == label_id:
    return True
  return exp.lower() == str(actual or "").strip().lower()


def _same_value(expected: Any, actual: Any) -> bool:
  if isinstance(actual, bool) or isinstance(expected, bool):
    return str(expected).strip().lower() == str(actual).strip().lower()
  if actual is None or expected is None:
    return actual is None and expected is None
  return str(expected).strip().lower() == str(actual).strip().lower()


def trigger_matches(rule: RuleView, ev: ChangeEvent) -> bool:
  if rule.trigger_type not in EVENT_TRIGGERS.get(ev.kind, ()):
    return False
  cfg = rule.trigger_config
  before = ev.before or {}
  after = ev.after or {}
  if cfg.get("group_id") and after.get("group_id") not in (None, cfg["group_id"]):
    return False

  if rule.trigger_type == "status_change":
    if "status" not in ev.changed:
      return False
    if "to_status" in cfg and not _same_status(cfg["to_status"], after.get("status"), after.get("status_label_id")):
      return False
    if "from_status" in cfg and not _same_status(cfg["from_status"], before.get("status"), before.get("status_label_id")):
      return False
    return True

  if rule.trigger_type == "field_change":
    fld = cfg.get("field")
    if fld not in ev.changed:
      return False
    if "to" in cfg and not _same_value(cfg["to"], after.get(fld)):
      return False
    if "from" in cfg and not _same_value(cfg["from"], before.get(fld)):
      return False
    return True

  if rule.trigger_type == "update_mention":
    mentions = set(after.get("mentions") or [])
    wanted = set(cfg.get("user_ids") or [])
    return bool(mentions & wanted) if wanted else bool(mentions)

  # item_created, item_archived, due_soon
  return True


def _as_date(value: Any) -> date | None:
  if value is None or isinstance(value, date):
    return value
  return date.fromisoformat(str(value)[:10])


def condition_holds(cond: dict[str, Any] | None, facts: dict[str, Any]) -> bool:
  """Evaluate a condition tree ({all|any|not} or {field, op, value}) against item facts."""
  if not cond:
    return True
  if "all" in cond:
    return all(condition_holds(c, facts) for c in cond["all"])
  if "any" in cond:
    return any(condition_holds(c, facts) for c in cond["any"])
  if "not" in cond:
    return not condition_holds(cond["not"], facts)

  op = cond.get("op", "eq")
  actual = facts.get(cond.get("field"))
  expected = cond.get("value")
  if op == "is_set":
    return actual not in (None, "", [], False)
  if op == "is_not_set":
    return actual in (None, "", [], False)
  if op == "eq":
    return _same_value(expected, actual)
  if op == "neq":
    return not _same_value(expected, actual)
  if op in ("in", "not_in"):
    inside = any(_same_value(v, actual) for v in (expected or []))
    return inside if op == "in" else not inside
  if op == "contains":
    if isinstance(actual, list):
      return expected in actual
    return str(expected or "").lower() in str(actual or "").lower()
  if op in ("before", "after"):
    a, e = _as_date(actual), _as_date(expected)
    if a is None or e is None:
      return False
    return a < e if op == "before" else a > e
  return False


def _validate_condition(cond: Any, path: str = "condition") -> None:
  if not isinstance(cond, dict):
    raise Invariant("Condition must be an object", details={"path": path})
  for key in ("all", "any"):
    if key in cond:
      if not isinstance(cond[key], list) or not cond[key]:
        raise Invariant(f"'{key}' must be a non-empty list", details={"path": path})
      for i, c in enumerate(cond[key]):
        _validate_condition(c, f"{path}.{key}[{i}]")
      return
  if "not" in cond:
    _validate_condition(cond["not"], f"{path}.not")
    return
  if cond.get("field") not in CONDITION_FIELDS:
    raise Invariant("Unknown condition field", details={"path": path, "allowed": list(CONDITION_FIELDS)})
  if cond.get("op", "eq") not in CONDITION_OPS:
    raise Invariant("Unknown condition op", details={"path": path, "allowed": list(CONDITION_OPS)})
  if cond.get("op") in ("in", "not_in") and not isinstance(cond.get("value"), list):
    raise Invariant("'in' conditions need a list value", details={"path": path})


def validate_rule(
  *,
  trigger_type: str,
  trigger_config: dict[str, Any],
  condition: dict[str, Any] | None,
  action_type: str,
  action_config: dict[str, Any],
) -> None:
  if trigger_type not in TRIGGER_TYPES:
    raise Invariant("Unknown trigger_type", details={"trigger_type": trigger_type, "allowed": list(TRIGGER_TYPES)})
  if action_type not in ACTION_TYPES:
    raise Invariant("Unknown action_type", details={"action_type": action_type, "allowed": list(ACTION_TYPES)})

  if trigger_type == "field_change" and trigger_config.get("field") not in WATCHED_FIELDS:
    raise Invariant("field_change needs trigger_config.field", details={"allowed": list(WATCHED_FIELDS)})
  if trigger_type == "due_soon" and "window_hours" in trigger_config:
    wh = trigger_config["window_hours"]
    if not isinstance(wh, (int, float)) or isinstance(wh, bool) or wh <= 0:
      raise Invariant("window_hours must be a positive number")
  if trigger_type == "update_mention" and not isinstance(trigger_config.get("user_ids", []), list):
    raise Invariant("update_mention user_ids must be a list")
  if condition is not None:
    _validate_condition(condition)

  if action_type == "notify_users":
    ids = action_config.get("user_ids")
    if not isinstance(ids, list) or not ids:
      raise Invariant("notify_users needs action_config.user_ids")
  if action_type == "set_field":
    fields = action_config.get("fields")
    if fields is None and "field" in action_config:
      fields = {action_config["field"]: action_config.get("value")}
    if not isinstance(fields, dict) or not fields or set(fields) - set(SETTABLE_FIELDS):
      raise Invariant("set_field needs field/value or fields", details={"allowed": list(SETTABLE_FIELDS)})
    if fields.get("due_date") is not None:
      try:
        _as_date(fields["due_date"])
      except ValueError as e:
        raise Invariant("set_field due_date must be YYYY-MM-DD", details={"due_date": fields["due_date"]}) from e
    for flag in ("needs_attention", "is_voicemail"):
      if flag in fields and not isinstance(fields[flag], bool):
        raise Invariant(f"set_field {flag} must be a boolean")
  if action_type == "move_to_group" and not action_config.get("group_id"):
    raise Invariant("move_to_group needs action_config.group_id")
  if action_type == "post_update" and not str(action_config.get("body") or "").strip():
    raise Invariant("post_update needs action_config.body")


def set_field_patch(action_config: dict[str, Any]) -> dict[str, Any]:
  fields = action_config.get("fields")
  if fields is None:
    fields = {action_config["field"]: action_config.get("value")}
  out = dict(fields)
  if "due_date" in out and out["due_date"] is not None:
    out["due_date"] = _as_date(out["due_date"])
  return out
