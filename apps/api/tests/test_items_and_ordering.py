from __future__ import annotations

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from anchor_tasks.db import SessionLocal
from anchor_tasks.models import AuditEvent
from conftest import add_member, create_item, make_user, setup_board


async def _group_order(client: AsyncClient, who, board_id: str, group_id: str) -> list[tuple[str, int]]:
  view = (await client.get(f"/tasks/boards/{board_id}/view", headers=who.headers)).json()
  return [(x["name"], x["order_index"]) for x in view["items_by_group"][group_id]]


@pytest.mark.anyio
async def test_empty_board_view(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner)
  b = await client.post("/tasks/boards", json={"workspace_id": s.workspace_id, "name": "Empty"}, headers=owner.headers)
  board_id = b.json()["id"]

  view = (await client.get(f"/tasks/boards/{board_id}/view", headers=owner.headers)).json()
  assert view["groups"] == []
  assert view["items"] == []
  assert view["items_by_group"] == {}
  assert view["totals"] == {"groups": 0, "items": 0, "updates": 0, "minutes": 0, "billable_minutes": 0}
  assert {lbl["label"] for lbl in view["label_catalog"]} >= {"To Do", "Done", "Needs Attention"}
  assert [m["user_id"] for m in view["workspace_members"]] == [owner.id]


@pytest.mark.anyio
async def test_items_keep_dense_order_through_moves(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner)
  a = await create_item(client, owner, s.group_id, "A")
  await create_item(client, owner, s.group_id, "B")
  c = await create_item(client, owner, s.group_id, "C")
  assert await _group_order(client, owner, s.board_id, s.group_id) == [("A", 0), ("B", 1), ("C", 2)]

  r = await client.post(f"/tasks/items/{c['id']}/move", json={"group_id": s.group_id, "order_index": 0}, headers=owner.headers)
  assert r.status_code == 200, r.text
  assert await _group_order(client, owner, s.board_id, s.group_id) == [("C", 0), ("A", 1), ("B", 2)]

  g2 = (await client.post(f"/tasks/boards/{s.board_id}/groups", json={"name": "Sprint 2"}, headers=owner.headers)).json()
  assert g2["order_index"] == 1
  r = await client.post(f"/tasks/items/{a['id']}/move", json={"group_id": g2["id"]}, headers=owner.headers)
  assert r.status_code == 200, r.text
  assert r.json()["group_id"] == g2["id"]
  assert await _group_order(client, owner, s.board_id, s.group_id) == [("C", 0), ("B", 1)]
  assert await _group_order(client, owner, s.board_id, g2["id"]) == [("A", 0)]


@pytest.mark.anyio
async def test_move_to_group_on_other_board_is_rejected(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s1 = await setup_board(client, owner, board_name="One")
  s2 = await setup_board(client, owner, board_name="Two")
  it = await create_item(client, owner, s1.group_id, "A")

  r = await client.post(f"/tasks/items/{it['id']}/move", json={"group_id": s2.group_id}, headers=owner.headers)
  assert r.status_code == 400, r.text
  assert r.json()["error"]["kind"] == "InvalidReference"
  r = await client.post(f"/tasks/items/{it['id']}/move", json={"group_id": "missing"}, headers=owner.headers)
  assert r.json()["error"]["kind"] == "InvalidReference"


@pytest.mark.anyio
async def test_group_insert_reorder_and_delete(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner)
  g2 = (await client.post(f"/tasks/boards/{s.board_id}/groups", json={"name": "Backlog", "order_index": 0}, headers=owner.headers)).json()
  view = (await client.get(f"/tasks/boards/{s.board_id}/view", headers=owner.headers)).json()
  assert [(g["name"], g["order_index"]) for g in view["groups"]] == [("Backlog", 0), ("Sprint 1", 1)]

  r = await client.post(f"/tasks/boards/{s.board_id}/groups/reorder", json={"group_ids": [s.group_id, g2["id"]]}, headers=owner.headers)
  assert r.status_code == 200, r.text
  assert [g["name"] for g in r.json()] == ["Sprint 1", "Backlog"]

  bad = await client.post(f"/tasks/boards/{s.board_id}/groups/reorder", json={"group_ids": [s.group_id]}, headers=owner.headers)
  assert bad.status_code == 400, bad.text

  await create_item(client, owner, g2["id"], "Old idea")
  await create_item(client, owner, g2["id"], "Older idea")
  d = await client.delete(f"/tasks/groups/{g2['id']}", headers=owner.headers)
  assert d.status_code == 200, d.text
  assert d.json() == {"ok": True, "items_deleted": 2}
  view = (await client.get(f"/tasks/boards/{s.board_id}/view", headers=owner.headers)).json()
  assert [(g["name"], g["order_index"]) for g in view["groups"]] == [("Sprint 1", 0)]
  assert view["items"] == []


@pytest.mark.anyio
async def test_same_patch_twice_is_idempotent(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner)
  it = await create_item(client, owner, s.group_id, "Ship spec")

  payload = {"name": "Ship final spec", "due_date": "2030-05-01", "needs_attention": True}
  first = await client.patch(f"/tasks/items/{it['id']}", json=payload, headers=owner.headers)
  second = await client.patch(f"/tasks/items/{it['id']}", json=payload, headers=owner.headers)
  assert first.status_code == 200 and second.status_code == 200
  keys = ("name", "status", "due_date", "needs_attention", "is_voicemail", "group_id", "order_index", "version")
  assert {k: first.json()[k] for k in keys} == {k: second.json()[k] for k in keys}
  assert second.json()["due_date"] == "2030-05-01"
  assert second.json()["version"] == it["version"] + 1

  async with SessionLocal() as db:
    n = (
      await db.execute(select(func.count(AuditEvent.id)).where(AuditEvent.item_id == it["id"], AuditEvent.event_type == "item.updated"))
    ).scalar_one()
  assert n == 2


@pytest.mark.anyio
async def test_patch_validation(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner)
  it = await create_item(client, owner, s.group_id, "Ship spec")

  r = await client.patch(f"/tasks/items/{it['id']}", json={"status": "Bogus"}, headers=owner.headers)
  assert r.status_code == 400, r.text
  err = r.json()["error"]
  assert err["kind"] == "Invariant"
  assert "Done" in err["details"]["allowed"]

  r = await client.patch(f"/tasks/items/{it['id']}", json={"due_date": "next tuesday"}, headers=owner.headers)
  assert r.status_code == 400, r.text
  assert r.json()["error"]["kind"] == "Invariant"

  r = await client.patch(f"/tasks/items/{it['id']}", json={"needs_attention": "yes"}, headers=owner.headers)
  assert r.status_code == 400, r.text

  r = await client.patch(f"/tasks/items/{it['id']}", json={"due_date": None}, headers=owner.headers)
  assert r.status_code == 200, r.text
  assert r.json()["due_date"] is None


@pytest.mark.anyio
async def test_legacy_status_strings_resolve(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner)
  it = await create_item(client, owner, s.group_id, "Ship spec", status="in_progress")
  assert it["status"] == "Working on it"
  r = await client.patch(f"/tasks/items/{it['id']}", json={"status": "needs_attention"}, headers=owner.headers)
  assert r.json()["status"] == "Needs Attention"


@pytest.mark.anyio
async def test_create_if_missing_needs_label_capability(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  member = await make_user("member@ex.com")
  s = await setup_board(client, owner)
  await add_member(client, owner, s.workspace_id, member)
  it = await create_item(client, owner, s.group_id, "Ship spec")

  r = await client.patch(f"/tasks/items/{it['id']}", json={"status": "QA Review", "create_if_missing": True}, headers=member.headers)
  assert r.status_code == 400, r.text
  assert r.json()["error"]["kind"] == "Invariant"

  r = await client.patch(f"/tasks/items/{it['id']}", json={"status": "QA Review", "create_if_missing": True}, headers=owner.headers)
  assert r.status_code == 200, r.text
  assert r.json()["status"] == "QA Review"
  labels = (await client.get(f"/tasks/boards/{s.board_id}/labels", headers=member.headers)).json()
  assert [lbl["label"] for lbl in labels if lbl["scope"] == "board"] == ["QA Review"]


@pytest.mark.anyio
async def test_archived_items_are_read_only(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner)
  it = await create_item(client, owner, s.group_id, "Ship spec")

  r = await client.post(f"/tasks/items/{it['id']}/archive", headers=owner.headers)
  assert r.status_code == 200, r.text
  assert r.json()["archived_at"] is not None

  r = await client.patch(f"/tasks/items/{it['id']}", json={"name": "Nope"}, headers=owner.headers)
  assert r.status_code == 400, r.text
  assert r.json()["error"]["kind"] == "Invariant"

  view = (await client.get(f"/tasks/boards/{s.board_id}/view", headers=owner.headers)).json()
  assert view["items"] == []
  view = (await client.get(f"/tasks/boards/{s.board_id}/view?include_archived=true", headers=owner.headers)).json()
  assert [x["id"] for x in view["items"]] == [it["id"]]

  r = await client.post(f"/tasks/items/{it['id']}/restore", headers=owner.headers)
  assert r.json()["archived_at"] is None
  r = await client.patch(f"/tasks/items/{it['id']}", json={"name": "Yes"}, headers=owner.headers)
  assert r.status_code == 200, r.text


@pytest.mark.anyio
async def test_stale_expected_version_conflicts(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner)
  it = await create_item(client, owner, s.group_id, "Ship spec")
  await client.patch(f"/tasks/items/{it['id']}", json={"name": "v1"}, headers=owner.headers)

  r = await client.patch(f"/tasks/items/{it['id']}", json={"name": "v2", "expected_version": it["version"]}, headers=owner.headers)
  assert r.status_code == 409, r.text
  assert r.json()["error"]["kind"] == "Conflict"


@pytest.mark.anyio
async def test_search_filters_view_only(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner)
  await create_item(client, owner, s.group_id, "Write copy")
  await create_item(client, owner, s.group_id, "Review COPY deck")
  await create_item(client, owner, s.group_id, "Deploy")

  view = (await client.get(f"/tasks/boards/{s.board_id}/view", params={"search": "copy"}, headers=owner.headers)).json()
  assert [(x["name"], x["order_index"]) for x in view["items"]] == [("Write copy", 0), ("Review COPY deck", 1)]
  assert view["totals"]["items"] == 2
  full = (await client.get(f"/tasks/boards/{s.board_id}/view", headers=owner.headers)).json()
  assert [x["order_index"] for x in full["items"]] == [0, 1, 2]


@pytest.mark.anyio
async def test_subitems(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner)
  it = await create_item(client, owner, s.group_id, "Ship spec")

  one = (await client.post(f"/tasks/items/{it['id']}/subitems", json={"name": "Draft"}, headers=owner.headers)).json()
  two = (await client.post(f"/tasks/items/{it['id']}/subitems", json={"name": "Edit"}, headers=owner.headers)).json()
  assert (one["order_index"], two["order_index"]) == (0, 1)

  r = await client.patch(f"/tasks/subitems/{one['id']}", json={"status": "done"}, headers=owner.headers)
  assert r.json()["status"] == "done"
  r = await client.patch(f"/tasks/subitems/{one['id']}", json={"status": "blocked"}, headers=owner.headers)
  assert r.status_code == 400, r.text

  r = await client.delete(f"/tasks/subitems/{one['id']}", headers=owner.headers)
  assert r.status_code == 200, r.text
  rows = (await client.get(f"/tasks/items/{it['id']}/subitems", headers=owner.headers)).json()
  assert [(x["name"], x["order_index"]) for x in rows] == [("Edit", 0)]


@pytest.mark.anyio
async def test_item_detail_and_delete(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner)
  it = await create_item(client, owner, s.group_id, "Ship spec")
  await client.post(f"/tasks/items/{it['id']}/updates", json={"body": "first"}, headers=owner.headers)
  await client.post(f"/tasks/items/{it['id']}/updates", json={"body": "second"}, headers=owner.headers)
  await client.post(f"/tasks/items/{it['id']}/time-entries", json={"minutes": 45, "billable_minutes": 15}, headers=owner.headers)

  detail = (await client.get(f"/tasks/items/{it['id']}", headers=owner.headers)).json()
  assert detail["item"]["name"] == "Ship spec"
  assert [u["body"] for u in detail["updates"]] == ["second", "first"]
  assert detail["updates"][0]["author_name"] == "Owner"
  assert detail["time_totals"]["total_minutes"] == 45
  assert detail["time_totals"]["billable_minutes"] == 15

  r = await client.delete(f"/tasks/items/{it['id']}", headers=owner.headers)
  assert r.status_code == 200, r.text
  r = await client.get(f"/tasks/items/{it['id']}", headers=owner.headers)
  assert r.status_code == 404
  assert r.json()["error"]["kind"] == "NotFound"


@pytest.mark.anyio
async def test_board_archive_and_delete(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner)
  await create_item(client, owner, s.group_id, "Ship spec")

  r = await client.patch(f"/tasks/boards/{s.board_id}", json={"archived": True, "name": "Old client"}, headers=owner.headers)
  assert r.status_code == 200, r.text
  assert r.json()["name"] == "Old client"
  assert r.json()["archived_at"] is not None
  assert (await client.get("/tasks/boards", headers=owner.headers)).json() == []
  listed = (await client.get("/tasks/boards", params={"include_archived": "true"}, headers=owner.headers)).json()
  assert [b["id"] for b in listed] == [s.board_id]

  r = await client.delete(f"/tasks/boards/{s.board_id}", headers=owner.headers)
  assert r.status_code == 200, r.text
  r = await client.get(f"/tasks/boards/{s.board_id}/view", headers=owner.headers)
  assert r.status_code == 404
