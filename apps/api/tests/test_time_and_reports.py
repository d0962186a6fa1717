from __future__ import annotations

import csv
import io

import pytest
from httpx import AsyncClient

from anchor_tasks.models import utcnow
from conftest import add_member, create_item, make_user, setup_board


@pytest.mark.anyio
async def test_billable_minutes_are_bounded(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner)
  it = await create_item(client, owner, s.group_id, "Ship spec")
  url = f"/tasks/items/{it['id']}/time-entries"

  r = await client.post(url, json={"minutes": 30, "billable_minutes": 45}, headers=owner.headers)
  assert r.status_code == 400, r.text
  assert r.json()["error"]["kind"] == "Invariant"
  r = await client.post(url, json={"minutes": -5}, headers=owner.headers)
  assert r.status_code == 400, r.text
  r = await client.post(url, json={"minutes": 30, "billable_minutes": 10, "is_billable": False}, headers=owner.headers)
  assert r.status_code == 400, r.text
  r = await client.post(url, json={"minutes": 90, "billable_minutes": 60, "is_billable": True}, headers=owner.headers)
  assert r.status_code == 400, r.text
  assert r.json()["error"]["details"] == {"minutes": 90, "billable_minutes": 60}

  full = (await client.post(url, json={"minutes": 30}, headers=owner.headers)).json()
  assert (full["billable_minutes"], full["is_billable"], full["work_category"]) == (30, True, "Other")
  off = (await client.post(url, json={"minutes": 20, "is_billable": False}, headers=owner.headers)).json()
  assert (off["billable_minutes"], off["is_billable"]) == (0, False)
  part = (await client.post(url, json={"minutes": 20, "billable_minutes": 5, "work_category": "  Web   design "}, headers=owner.headers)).json()
  assert (part["billable_minutes"], part["is_billable"], part["work_category"]) == (5, False, "Web design")

  entries = (await client.get(url, headers=owner.headers)).json()
  assert [e["id"] for e in entries] == [full["id"], off["id"], part["id"]]


@pytest.mark.anyio
async def test_time_aggregate_filters(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  bob = await make_user("bob@ex.com")
  s = await setup_board(client, owner)
  await add_member(client, owner, s.workspace_id, bob)
  a = await create_item(client, owner, s.group_id, "A")
  b = await create_item(client, owner, s.group_id, "B")
  await client.post(f"/tasks/items/{a['id']}/time-entries", json={"minutes": 60, "billable_minutes": 30, "work_category": "Web"}, headers=owner.headers)
  await client.post(f"/tasks/items/{b['id']}/time-entries", json={"minutes": 15, "work_category": "SEO"}, headers=bob.headers)

  agg = (await client.post("/tasks/time/aggregate", json={"item_ids": [a["id"], b["id"]]}, headers=owner.headers)).json()
  assert (agg["total_minutes"], agg["billable_minutes"], agg["entry_count"]) == (75, 45, 2)
  assert [c["work_category"] for c in agg["by_category"]] == ["SEO", "Web"]

  web = (await client.post("/tasks/time/aggregate", json={"item_ids": [a["id"], b["id"]], "work_category": "web"}, headers=owner.headers)).json()
  assert web["total_minutes"] == 60
  bobs = (await client.post("/tasks/time/aggregate", json={"item_ids": [a["id"], b["id"]], "user_ids": [bob.id]}, headers=owner.headers)).json()
  assert bobs["total_minutes"] == 15
  past = (
    await client.post(
      "/tasks/time/aggregate",
      json={"item_ids": [a["id"]], "start_date": "2000-01-01", "end_date": "2000-12-31"},
      headers=owner.headers,
    )
  ).json()
  assert past == {"total_minutes": 0, "billable_minutes": 0, "entry_count": 0, "by_category": []}


@pytest.mark.anyio
async def test_report_over_zero_boards(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  r = await client.post("/tasks/reports", json={"board_ids": []}, headers=owner.headers)
  assert r.status_code == 200, r.text
  assert r.json()["rows"] == []
  r = await client.post("/tasks/reports/billing", json={"board_ids": []}, headers=owner.headers)
  assert r.status_code == 200, r.text
  assert r.json() == {"rows": [], "categories": [], "total_minutes": 0, "billable_minutes": 0}


@pytest.mark.anyio
async def test_report_counts_canonical_buckets(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner)
  lbl = await client.post(f"/tasks/boards/{s.board_id}/labels", json={"label": "Shipped", "is_done_state": True}, headers=owner.headers)
  assert lbl.status_code == 200, lbl.text
  for name, status in (("a", "To Do"), ("b", "Working on it"), ("c", "Stuck"), ("d", "Done"), ("e", "Shipped"), ("f", "Needs Attention")):
    await create_item(client, owner, s.group_id, name, status=status)
  it = await create_item(client, owner, s.group_id, "g")
  await client.patch(f"/tasks/items/{it['id']}", json={"needs_attention": True}, headers=owner.headers)
  await client.post(f"/tasks/items/{it['id']}/updates", json={"body": "note"}, headers=owner.headers)
  await client.post(f"/tasks/items/{it['id']}/time-entries", json={"minutes": 25}, headers=owner.headers)

  today = utcnow().date().isoformat()
  row = (await client.post("/tasks/reports", json={"board_ids": [s.board_id], "start_date": today, "end_date": today}, headers=owner.headers)).json()["rows"][0]
  assert row["total_items"] == 7
  assert row["status_counts"] == {"todo": 2, "working": 1, "blocked": 1, "done": 2, "needs_attention": 1}
  assert row["needs_attention_flagged"] == 1
  assert row["updates_in_range"] == 1
  assert row["time_minutes_in_range"] == 25
  assert row["items_updated_in_range"] == 7


@pytest.mark.anyio
async def test_report_rejects_bad_window_and_unknown_board(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  outsider = await make_user("outsider@ex.com")
  s = await setup_board(client, owner)

  r = await client.post("/tasks/reports", json={"board_ids": [s.board_id], "start_date": "2030-02-01", "end_date": "2030-01-01"}, headers=owner.headers)
  assert r.status_code == 400
  assert r.json()["error"]["kind"] == "Invariant"
  assert r.json()["error"]["details"] == {"start_date": "2030-02-01", "end_date": "2030-01-01"}
  backwards = {"start_date": "2030-02-01", "end_date": "2030-01-01"}
  for path, body in (
    ("/tasks/reports/billing", {"board_ids": [s.board_id], **backwards}),
    ("/tasks/reports/export.csv", {"board_ids": [s.board_id], **backwards}),
    ("/tasks/time/aggregate", {"item_ids": [], **backwards}),
  ):
    r = await client.post(path, json=body, headers=owner.headers)
    assert (r.status_code, r.json()["error"]["kind"]) == (400, "Invariant"), path
  r = await client.get(f"/tasks/boards/{s.board_id}/export.csv", params=backwards, headers=owner.headers)
  assert r.status_code == 400
  r = await client.post("/tasks/reports", json={"board_ids": ["missing"]}, headers=owner.headers)
  assert r.status_code == 404
  r = await client.post("/tasks/reports", json={"board_ids": [s.board_id]}, headers=outsider.headers)
  assert r.status_code == 403


@pytest.mark.anyio
async def test_billing_csv_round_trips_awkward_text(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner, board_name="Acme, Inc.", group_name='Phase "One"')
  awkward = 'Fix "quotes", commas\nand newlines'
  it = await create_item(client, owner, s.group_id, awkward)
  plain = await create_item(client, owner, s.group_id, "Banner")
  await client.post(
    f"/tasks/items/{it['id']}/time-entries",
    json={"minutes": 40, "billable_minutes": 30, "work_category": "Web", "description": "copy, layout"},
    headers=owner.headers,
  )
  await client.post(f"/tasks/items/{it['id']}/time-entries", json={"minutes": 10, "work_category": "Design"}, headers=owner.headers)
  await client.post(f"/tasks/items/{plain['id']}/time-entries", json={"minutes": 5, "work_category": "Web"}, headers=owner.headers)

  r = await client.get(f"/tasks/boards/{s.board_id}/export.csv", headers=owner.headers)
  assert r.status_code == 200, r.text
  assert r.headers["content-type"].startswith("text/csv")
  assert f'filename="billing-report-acme-inc-{utcnow().date().isoformat()}.csv"' in r.headers["content-disposition"]
  assert "\r\n" not in r.text

  records = list(csv.reader(io.StringIO(r.text, newline="")))
  header, rows = records[0], records[1:]
  assert header == ["board", "group", "item", "category", "total_minutes", "billable_minutes", "entry_count", "entries"]
  assert [(x[3], x[2]) for x in rows] == [("Design", awkward), ("Web", "Banner"), ("Web", awkward)]
  web = rows[2]
  assert web[0] == "Acme, Inc."
  assert web[1] == 'Phase "One"'
  assert web[4:7] == ["40", "30", "1"]
  assert web[7].endswith("40 min (30 billable) - copy, layout")
