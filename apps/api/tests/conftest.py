from __future__ import annotations

import os
from dataclasses import dataclass

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./anchor_tasks_test.db")
os.environ.setdefault("NOTIFICATION_SINK", "local")

import pytest
from httpx import ASGITransport, AsyncClient

from anchor_tasks.config import settings
from anchor_tasks.db import SessionLocal, engine
from anchor_tasks.labels import ensure_default_labels
from anchor_tasks.main import app
from anchor_tasks.models import ApiToken, Base, User
from anchor_tasks.rate_limit import limiter
from anchor_tasks.security import api_token_hash, generate_api_token


@pytest.fixture(scope="session")
def anyio_backend() -> str:
  return "asyncio"


async def _reset_db() -> None:
  limiter.reset()
  async with engine.begin() as conn:
    await conn.run_sync(Base.metadata.drop_all)
    await conn.run_sync(Base.metadata.create_all)
  async with SessionLocal() as db:
    await ensure_default_labels(db)
    await db.commit()


@pytest.fixture(autouse=True)
async def _clean_between_tests(anyio_backend) -> None:
  db_name = settings.database_url.rsplit("/", 1)[-1]
  if "test" not in db_name:
    raise RuntimeError(
      "Refusing to run destructive tests against non-test DB. "
      "Set DATABASE_URL to a *_test database (e.g. anchor_tasks_test)."
    )
  await _reset_db()
  yield
  await engine.dispose()


@pytest.fixture
async def client() -> AsyncClient:
  transport = ASGITransport(app=app)
  async with AsyncClient(transport=transport, base_url="http://localhost") as c:
    yield c


@dataclass
class Account:
  id: str
  email: str
  name: str
  token: str

  @property
  def headers(self) -> dict[str, str]:
    return {"Authorization": f"Bearer {self.token}"}


async def make_user(email: str, name: str | None = None, *, handle: str | None = None) -> Account:
  token = generate_api_token()
  async with SessionLocal() as db:
    u = User(email=email.lower(), name=name or email.split("@", 1)[0].title(), handle=handle)
    db.add(u)
    await db.flush()
    db.add(ApiToken(user_id=u.id, name="tests", token_hash=api_token_hash(token), token_prefix=token[:8]))
    await db.commit()
    return Account(id=u.id, email=u.email, name=u.name, token=token)


async def add_member(client: AsyncClient, owner: Account, workspace_id: str, member: Account, role: str = "member") -> None:
  res = await client.post(f"/tasks/workspaces/{workspace_id}/members", json={"user_id": member.id, "role": role}, headers=owner.headers)
  assert res.status_code == 200, res.text


@dataclass
class BoardSetup:
  workspace_id: str
  board_id: str
  group_id: str


async def setup_board(client: AsyncClient, owner: Account, *, board_name: str = "Client Work", group_name: str = "Sprint 1") -> BoardSetup:
  ws = await client.post("/tasks/workspaces", json={"name": "Agency"}, headers=owner.headers)
  assert ws.status_code == 200, ws.text
  workspace_id = ws.json()["id"]
  b = await client.post("/tasks/boards", json={"workspace_id": workspace_id, "name": board_name}, headers=owner.headers)
  assert b.status_code == 200, b.text
  board_id = b.json()["id"]
  g = await client.post(f"/tasks/boards/{board_id}/groups", json={"name": group_name, "order_index": 0}, headers=owner.headers)
  assert g.status_code == 200, g.text
  return BoardSetup(workspace_id=workspace_id, board_id=board_id, group_id=g.json()["id"])


async def create_item(client: AsyncClient, who: Account, group_id: str, name: str, **fields) -> dict:
  res = await client.post(f"/tasks/groups/{group_id}/items", json={"name": name, **fields}, headers=who.headers)
  assert res.status_code == 200, res.text
  return res.json()
