from __future__ import annotations

import csv
import io
from datetime import date, datetime, timezone

import pytest

from anchor_tasks.automations.engine import render_template
from anchor_tasks.automations.rules import RuleView, condition_holds, trigger_matches, validate_rule
from anchor_tasks.editing import SYSTEM_ACTOR, ChangeEvent
from anchor_tasks.errors import Invariant
from anchor_tasks.models import Item
from anchor_tasks.reports.csv_export import billing_filename, encode_rows
from anchor_tasks.time_accounting import billable_split, date_window


def _rule(trigger_type: str, trigger_config: dict | None = None) -> RuleView:
  return RuleView(
    id="r1",
    board_id="b1",
    name="R",
    trigger_type=trigger_type,
    trigger_config=trigger_config or {},
    condition=None,
    action_type="notify_admins",
    action_config={},
  )


def _event(kind: str, before: dict | None, after: dict | None, changed: tuple[str, ...] = ()) -> ChangeEvent:
  return ChangeEvent(
    kind=kind,
    entity="Item",
    entity_id="i1",
    board_id="b1",
    item_id="i1",
    before=before,
    after=after,
    actor=SYSTEM_ACTOR,
    at=datetime.now(timezone.utc),
    changed=changed,
  )


def test_status_change_trigger() -> None:
  ev = _event("item.updated", {"status": "To Do"}, {"status": "Needs Attention", "status_label_id": "lbl-na"}, ("status",))
  assert trigger_matches(_rule("status_change", {"to_status": "needs attention"}), ev)
  assert trigger_matches(_rule("status_change", {"to_status": "lbl-na"}), ev)
  assert trigger_matches(_rule("status_change", {"from_status": "To Do"}), ev)
  assert not trigger_matches(_rule("status_change", {"to_status": "Done"}), ev)
  assert not trigger_matches(_rule("status_change", {"from_status": "Stuck"}), ev)

  renamed = _event("item.updated", {"name": "a"}, {"name": "b", "status": "Needs Attention"}, ("name",))
  assert not trigger_matches(_rule("status_change", {"to_status": "Needs Attention"}), renamed)
  assert not trigger_matches(_rule("status_change"), _event("item.created", None, {"status": "To Do"}))


def test_field_change_trigger() -> None:
  ev = _event("item.updated", {"needs_attention": False}, {"needs_attention": True}, ("needs_attention",))
  assert trigger_matches(_rule("field_change", {"field": "needs_attention", "to": True}), ev)
  assert not trigger_matches(_rule("field_change", {"field": "needs_attention", "to": False}), ev)
  assert not trigger_matches(_rule("field_change", {"field": "due_date"}), ev)
  moved = _event("item.moved", {"group_id": "g1"}, {"group_id": "g2"}, ("group_id",))
  assert trigger_matches(_rule("field_change", {"field": "group_id", "to": "g2"}), moved)


def test_update_mention_trigger() -> None:
  ev = _event("update.created", None, {"mentions": ["u1", "u2"]})
  assert trigger_matches(_rule("update_mention"), ev)
  assert trigger_matches(_rule("update_mention", {"user_ids": ["u2"]}), ev)
  assert not trigger_matches(_rule("update_mention", {"user_ids": ["u3"]}), ev)
  assert not trigger_matches(_rule("update_mention"), _event("update.created", None, {"mentions": []}))


def test_condition_tree() -> None:
  facts = {"status": "Stuck", "needs_attention": True, "due_date": "2030-01-10", "assignee_ids": ["u1"], "name": "Fix login"}
  assert condition_holds(None, facts)
  assert condition_holds({"all": [{"field": "status", "value": "stuck"}, {"field": "needs_attention", "value": True}]}, facts)
  assert condition_holds({"any": [{"field": "status", "value": "Done"}, {"field": "assignee_ids", "op": "contains", "value": "u1"}]}, facts)
  assert condition_holds({"not": {"field": "status", "op": "in", "value": ["Done", "To Do"]}}, facts)
  assert condition_holds({"field": "due_date", "op": "before", "value": "2030-02-01"}, facts)
  assert not condition_holds({"field": "due_date", "op": "after", "value": "2030-02-01"}, facts)
  assert condition_holds({"field": "name", "op": "contains", "value": "LOGIN"}, facts)
  assert not condition_holds({"field": "group_id", "op": "is_set"}, facts)


def test_validate_rule_errors() -> None:
  ok = {"trigger_type": "item_created", "trigger_config": {}, "condition": None, "action_type": "notify_admins", "action_config": {}}
  validate_rule(**ok)
  bad = [
    {"trigger_type": "field_change", "trigger_config": {"field": "secret"}},
    {"trigger_type": "due_soon", "trigger_config": {"window_hours": 0}},
    {"condition": {"field": "status", "op": "matches"}},
    {"condition": {"all": []}},
    {"action_type": "notify_users", "action_config": {"user_ids": []}},
    {"action_type": "set_field", "action_config": {"fields": {"needs_attention": "yes"}}},
    {"action_type": "set_field", "action_config": {"field": "due_date", "value": "soon"}},
    {"action_type": "post_update", "action_config": {"body": "  "}},
  ]
  for override in bad:
    with pytest.raises(Invariant):
      validate_rule(**{**ok, **override})


def test_render_template_tokens() -> None:
  it = Item(name="Ship spec", status="Done", due_date=date(2030, 1, 2))
  out = render_template("{actor} moved {item.name} to {status} (due {due_date}) {unknown}", item=it, actor="Sam")
  assert out == "Sam moved Ship spec to Done (due 2030-01-02) {unknown}"
  assert render_template("{due_date}", item=Item(name="x", status="To Do", due_date=None), actor="Sam") == ""


def test_billable_split() -> None:
  assert billable_split(90, None, None) == (90, True)
  assert billable_split(90, 60, None) == (60, False)
  assert billable_split(90, None, False) == (0, False)
  assert billable_split(0, None, None) == (0, True)
  assert billable_split(90, 90, True) == (90, True)
  with pytest.raises(Invariant):
    billable_split(30, 40, None)
  with pytest.raises(Invariant):
    billable_split(30, 10, False)
  with pytest.raises(Invariant):
    billable_split(90, 60, True)


def test_date_window_is_end_exclusive() -> None:
  w = date_window(date(2030, 1, 1), date(2030, 1, 31))
  assert w.contains(datetime(2030, 1, 31, 23, 59, tzinfo=timezone.utc))
  assert not w.contains(datetime(2030, 2, 1, 0, 0, tzinfo=timezone.utc))
  assert not w.contains(datetime(2029, 12, 31, 23, 59, tzinfo=timezone.utc))
  open_ended = date_window(None, None)
  assert open_ended.contains(datetime(1999, 1, 1, tzinfo=timezone.utc))
  with pytest.raises(Invariant):
    date_window(date(2030, 2, 1), date(2030, 1, 1))


def test_csv_encoding_round_trip() -> None:
  rows = [
    ['say "hi"', "a,b", "line1\nline2", "cr\rhere"],
    [None, True, 3, date(2030, 1, 2)],
    ["a\r\nb", "", "plain", "x"],
  ]
  chunks = list(encode_rows(["c1", "c2", "c3", "c4"], rows))
  text = b"".join(chunks).decode("utf-8")
  assert text.endswith("\n") and not text.endswith("\r\n")
  assert chunks[2] == b',true,3,2030-01-02\n'
  assert chunks[1].startswith(b'"say ""hi"""')
  parsed = list(csv.reader(io.StringIO(text, newline="")))
  assert parsed == [
    ["c1", "c2", "c3", "c4"],
    ['say "hi"', "a,b", "line1\nline2", "cr\rhere"],
    ["", "true", "3", "2030-01-02"],
    ["a\r\nb", "", "plain", "x"],
  ]


def test_billing_filename() -> None:
  assert billing_filename("Acme / Web  Build", date(2030, 1, 2)) == "billing-report-acme-web-build-2030-01-02.csv"
  assert billing_filename("***", date(2030, 1, 2)) == "billing-report-board-2030-01-02.csv"
