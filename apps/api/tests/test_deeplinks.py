from __future__ import annotations

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from anchor_tasks.client.api import TaskApiClient, TaskApiError
from anchor_tasks.client.deeplink import DeepLink, follow_link, parse_link
from anchor_tasks.main import app
from conftest import create_item, make_user, setup_board


def test_parse_link() -> None:
  link = parse_link("/tasks?pane=boards&workspace=w1&board=b1&item=i1")
  assert link == DeepLink(pane="boards", workspace="w1", board="b1", item="i1")
  assert parse_link(link.to_url()) == link

  assert parse_link("/tasks?pane=settings&board=b1").pane == "home"
  assert parse_link("/tasks?item=i1") == DeepLink()
  assert parse_link("/tasks?board=%20&item=i1").board is None
  assert DeepLink(pane="my-work").to_url() == "/tasks?pane=my-work"


@pytest.mark.anyio
async def test_follow_link_resolves_board_and_item(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  s = await setup_board(client, owner)
  it = await create_item(client, owner, s.group_id, "Ship spec")

  async with TaskApiClient(base_url="http://localhost", token=owner.token, transport=ASGITransport(app=app)) as api:
    link, proj = await follow_link(api, parse_link(f"/tasks?board={s.board_id}&item={it['id']}"))
    assert link.item == it["id"]
    assert proj.local.item(it["id"])["name"] == "Ship spec"

    link, proj = await follow_link(api, parse_link(f"/tasks?workspace=stale&board={s.board_id}&item=gone"))
    assert (link.workspace, link.board, link.item) == (s.workspace_id, s.board_id, None)
    assert proj is not None

    link, proj = await follow_link(api, parse_link(f"/tasks?pane=boards&board=missing&item={it['id']}"))
    assert (link.pane, link.board, link.item) == ("boards", None, None)
    assert proj is None


@pytest.mark.anyio
async def test_follow_link_hides_boards_the_user_cannot_read(client: AsyncClient) -> None:
  owner = await make_user("owner@ex.com")
  outsider = await make_user("outsider@ex.com")
  s = await setup_board(client, owner)

  async with TaskApiClient(base_url="http://localhost", token=outsider.token, transport=ASGITransport(app=app)) as api:
    link, proj = await follow_link(api, parse_link(f"/tasks?board={s.board_id}"))
  assert link.board is None
  assert proj is None


@pytest.mark.anyio
async def test_follow_link_surfaces_other_failures() -> None:
  api = TaskApiClient(base_url="http://tasks.test", token="atk_test", transport=httpx.MockTransport(lambda r: httpx.Response(503, json={"error": {"kind": "Unavailable", "message": "down"}})))
  with pytest.raises(TaskApiError) as exc:
    await follow_link(api, DeepLink(board="b1"))
  assert exc.value.kind == "Unavailable"
  assert exc.value.retryable
  await api.aclose()
