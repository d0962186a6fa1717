from __future__ import annotations

import pytest
from httpx import AsyncClient

from anchor_tasks.config import settings
from conftest import add_member, create_item, make_user, setup_board


@pytest.mark.anyio
async def test_toggling_assignee_twice_restores_state(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  bob = await make_user("bob@ex.com")
  s = await setup_board(client, owner)
  await add_member(client, owner, s.workspace_id, bob)
  it = await create_item(client, owner, s.group_id, "Ship spec")

  before = (await client.get(f"/tasks/boards/{s.board_id}/view", headers=owner.headers)).json()["assignees_by_item"]
  r = await client.post(f"/tasks/items/{it['id']}/assignees", json={"email": "BOB@ex.com"}, headers=owner.headers)
  assert r.status_code == 200, r.text
  mid = (await client.get(f"/tasks/boards/{s.board_id}/view", headers=owner.headers)).json()["assignees_by_item"]
  assert [a["user_id"] for a in mid[it["id"]]] == [bob.id]

  r = await client.delete(f"/tasks/items/{it['id']}/assignees/{bob.id}", headers=owner.headers)
  assert r.status_code == 200, r.text
  assert r.json() == []
  after = (await client.get(f"/tasks/boards/{s.board_id}/view", headers=owner.headers)).json()["assignees_by_item"]
  assert after == before

  r = await client.delete(f"/tasks/items/{it['id']}/assignees/{bob.id}", headers=owner.headers)
  assert r.status_code == 404


@pytest.mark.anyio
async def test_assignment_notifies_the_assignee_once(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  bob = await make_user("bob@ex.com")
  s = await setup_board(client, owner)
  await add_member(client, owner, s.workspace_id, bob)
  it = await create_item(client, owner, s.group_id, "Ship spec")

  await client.post(f"/tasks/items/{it['id']}/assignees", json={"user_id": bob.id}, headers=owner.headers)
  again = await client.post(f"/tasks/items/{it['id']}/assignees", json={"user_id": bob.id}, headers=owner.headers)
  assert [a["user_id"] for a in again.json()] == [bob.id]
  notes = (await client.get("/tasks/notifications", headers=bob.headers)).json()
  assert [n["title"] for n in notes] == ["Assigned: Ship spec"]

  r = await client.post(f"/tasks/items/{it['id']}/assignees", json={"email": "ghost@ex.com"}, headers=owner.headers)
  assert r.status_code == 400
  assert r.json()["error"]["kind"] == "InvalidReference"


@pytest.mark.anyio
async def test_my_work_skips_archived_items(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner)
  keep = await create_item(client, owner, s.group_id, "Keep", due_date="2030-01-02")
  gone = await create_item(client, owner, s.group_id, "Gone")
  other = await create_item(client, owner, s.group_id, "Not mine")
  for it in (keep, gone):
    await client.post(f"/tasks/items/{it['id']}/assignees", json={"user_id": owner.id}, headers=owner.headers)
  await client.post(f"/tasks/items/{gone['id']}/archive", headers=owner.headers)

  mine = (await client.get("/tasks/my-work", headers=owner.headers)).json()
  ids = [x["id"] for section in mine["boards"] for x in section["items"]]
  assert ids == [keep["id"]]
  assert other["id"] not in ids
  assert mine["boards"][0]["board"]["id"] == s.board_id


@pytest.mark.anyio
async def test_my_work_keeps_items_on_archived_boards(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner)
  it = await create_item(client, owner, s.group_id, "Ship spec")
  await client.post(f"/tasks/items/{it['id']}/assignees", json={"user_id": owner.id}, headers=owner.headers)
  r = await client.patch(f"/tasks/boards/{s.board_id}", json={"archived": True}, headers=owner.headers)
  assert r.status_code == 200, r.text

  mine = (await client.get("/tasks/my-work", headers=owner.headers)).json()
  assert mine["total"] == 1
  assert [x["id"] for x in mine["boards"][0]["items"]] == [it["id"]]


@pytest.mark.anyio
async def test_mention_at_end_of_body_and_unknown_handles(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  alice = await make_user("alice@ex.com", "Alice")
  carol = await make_user("carol@ex.com", "Carol", handle="carol")
  s = await setup_board(client, owner)
  await add_member(client, owner, s.workspace_id, alice)
  await add_member(client, owner, s.workspace_id, carol)
  it = await create_item(client, owner, s.group_id, "Ship spec")

  body = "looping in @nobody and @carol,@alice@ex.com"
  r = await client.post(f"/tasks/items/{it['id']}/updates", json={"body": body}, headers=owner.headers)
  assert r.status_code == 200, r.text
  assert r.json()["mentions"] == [carol.id, alice.id]
  assert r.json()["body"] == body

  r = await client.post(f"/tasks/items/{it['id']}/updates", json={"body": "self mention @owner@ex.com"}, headers=owner.headers)
  assert r.json()["mentions"] == [owner.id]
  assert (await client.get("/tasks/notifications", headers=owner.headers)).json() == []


@pytest.mark.anyio
async def test_mention_notification_body_is_truncated(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  alice = await make_user("alice@ex.com")
  s = await setup_board(client, owner)
  await add_member(client, owner, s.workspace_id, alice)
  it = await create_item(client, owner, s.group_id, "Ship spec")

  body = "@alice@ex.com " + "x" * 400
  await client.post(f"/tasks/items/{it['id']}/updates", json={"body": body}, headers=owner.headers)
  notes = (await client.get("/tasks/notifications", headers=alice.headers)).json()
  assert len(notes[0]["body"]) == 280
  assert body.startswith(notes[0]["body"][:-1])


@pytest.mark.anyio
async def test_notification_read_flow(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  alice = await make_user("alice@ex.com")
  s = await setup_board(client, owner)
  await add_member(client, owner, s.workspace_id, alice)
  one = await create_item(client, owner, s.group_id, "One")
  two = await create_item(client, owner, s.group_id, "Two")
  for it in (one, two):
    await client.post(f"/tasks/items/{it['id']}/updates", json={"body": "ping @alice@ex.com"}, headers=owner.headers)

  assert (await client.get("/tasks/notifications/unread-count", headers=alice.headers)).json() == {"count": 2}
  notes = (await client.get("/tasks/notifications", headers=alice.headers)).json()
  assert [n["title"] for n in notes] == ["Two", "One"]

  r = await client.post(f"/tasks/notifications/{notes[0]['id']}/read", headers=alice.headers)
  assert r.status_code == 200, r.text
  assert r.json()["status"] == "read"
  assert r.json()["read_at"] is not None
  unread = (await client.get("/tasks/notifications", params={"unread_only": "true"}, headers=alice.headers)).json()
  assert [n["title"] for n in unread] == ["One"]

  r = await client.post(f"/tasks/notifications/{notes[1]['id']}/read", headers=owner.headers)
  assert r.status_code == 404

  r = await client.post("/tasks/notifications/read-all", headers=alice.headers)
  assert r.json() == {"ok": True, "updated": 1}
  assert (await client.get("/tasks/notifications/unread-count", headers=alice.headers)).json() == {"count": 0}


@pytest.mark.anyio
async def test_mention_after_read_is_delivered_again(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  alice = await make_user("alice@ex.com")
  s = await setup_board(client, owner)
  await add_member(client, owner, s.workspace_id, alice)
  it = await create_item(client, owner, s.group_id, "Ship spec")

  await client.post(f"/tasks/items/{it['id']}/updates", json={"body": "ping @alice@ex.com"}, headers=owner.headers)
  await client.post("/tasks/notifications/read-all", headers=alice.headers)
  await client.post(f"/tasks/items/{it['id']}/updates", json={"body": "ping again @alice@ex.com"}, headers=owner.headers)
  assert (await client.get("/tasks/notifications/unread-count", headers=alice.headers)).json() == {"count": 1}


@pytest.mark.anyio
async def test_update_posting_is_rate_limited(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner)
  it = await create_item(client, owner, s.group_id, "Ship spec")

  orig = settings.rate_limit_updates_per_minute
  settings.rate_limit_updates_per_minute = 2
  try:
    for _ in range(2):
      r = await client.post(f"/tasks/items/{it['id']}/updates", json={"body": "note"}, headers=owner.headers)
      assert r.status_code == 200, r.text
    r = await client.post(f"/tasks/items/{it['id']}/updates", json={"body": "note"}, headers=owner.headers)
    assert r.status_code == 429, r.text
    assert r.headers.get("retry-after")
    assert r.json()["error"]["kind"] == "RateLimited"
  finally:
    settings.rate_limit_updates_per_minute = orig
