from __future__ import annotations

import pytest
from httpx import AsyncClient

from anchor_tasks.errors import Invariant
from anchor_tasks.labels import canonical_bucket, legacy_label, normalize_color
from anchor_tasks.models import StatusLabel
from conftest import add_member, create_item, make_user, setup_board


def test_normalize_color() -> None:
  assert normalize_color("#00C875") == "#00c875ff"
  assert normalize_color(" #00c87580 ") == "#00c87580"
  for bad in ("green", "#abc", "#00c875f", ""):
    with pytest.raises(Invariant):
      normalize_color(bad)


def test_canonical_bucket_mapping() -> None:
  assert canonical_bucket("In Progress") == "working"
  assert canonical_bucket("needs_attention") == "needs_attention"
  assert canonical_bucket("BLOCKED") == "blocked"
  assert canonical_bucket("Waiting on client") == "todo"
  assert canonical_bucket("Waiting on client", StatusLabel(label="Waiting on client", is_done_state=True)) == "done"
  assert legacy_label("in progress") == "Working on it"
  assert legacy_label("mystery") is None


@pytest.mark.anyio
async def test_board_labels_crud(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner)

  r = await client.post(f"/tasks/boards/{s.board_id}/labels", json={"label": "Review", "color": "#0086C0"}, headers=owner.headers)
  assert r.status_code == 200, r.text
  lbl = r.json()
  assert (lbl["scope"], lbl["color"], lbl["order_index"]) == ("board", "#0086c0ff", 0)

  dupe = await client.post(f"/tasks/boards/{s.board_id}/labels", json={"label": "review"}, headers=owner.headers)
  assert dupe.status_code == 409
  assert dupe.json()["error"]["kind"] == "Conflict"

  it = await create_item(client, owner, s.group_id, "Ship spec", status="Review")
  r = await client.patch(f"/tasks/labels/{lbl['id']}", json={"label": "In Review"}, headers=owner.headers)
  assert r.status_code == 200, r.text
  detail = (await client.get(f"/tasks/items/{it['id']}", headers=owner.headers)).json()
  assert detail["item"]["status"] == "In Review"
  assert detail["item"]["status_label_id"] == lbl["id"]


@pytest.mark.anyio
async def test_archived_label_falls_back_for_reads(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner)
  lbl = (await client.post(f"/tasks/boards/{s.board_id}/labels", json={"label": "Blocked by vendor"}, headers=owner.headers)).json()
  it = await create_item(client, owner, s.group_id, "Ship spec", status="Blocked by vendor")

  r = await client.delete(f"/tasks/labels/{lbl['id']}", headers=owner.headers)
  assert r.status_code == 200, r.text
  labels = (await client.get(f"/tasks/boards/{s.board_id}/labels", headers=owner.headers)).json()
  assert "Blocked by vendor" not in [x["label"] for x in labels]

  view = (await client.get(f"/tasks/boards/{s.board_id}/view", headers=owner.headers)).json()
  row = view["items_by_group"][s.group_id][0]
  assert row["id"] == it["id"]
  assert row["status"] in [x["label"] for x in view["label_catalog"]]
  assert row["status"] == "To Do"

  r = await client.patch(f"/tasks/items/{it['id']}", json={"status": "Blocked by vendor"}, headers=owner.headers)
  assert r.status_code == 400


@pytest.mark.anyio
async def test_label_management_needs_admin(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  member = await make_user("member@ex.com")
  s = await setup_board(client, owner)
  await add_member(client, owner, s.workspace_id, member)

  r = await client.post(f"/tasks/boards/{s.board_id}/labels", json={"label": "Mine"}, headers=member.headers)
  assert r.status_code == 403
  assert r.json()["error"]["kind"] == "Forbidden"

  labels = (await client.get(f"/tasks/boards/{s.board_id}/labels", headers=member.headers)).json()
  done = next(x for x in labels if x["label"] == "Done")
  assert done["scope"] == "global"
  r = await client.patch(f"/tasks/labels/{done['id']}", json={"label": "Finished"}, headers=owner.headers)
  assert r.status_code == 404
