from __future__ import annotations

from typing import Any

import httpx

DEFAULT_TIMEOUT_SECONDS = 30.0
RETRYABLE_KINDS = frozenset({"Timeout", "Unavailable", "RateLimited"})


class TaskApiError(RuntimeError):
  def __init__(self, *, kind: str, message: str, status_code: int | None = None, details: Any | None = None) -> None:
    super().__init__(message)
    self.kind = kind
    self.message = message
    self.status_code = status_code
    self.details = details

  @property
  def retryable(self) -> bool:
    return self.kind in RETRYABLE_KINDS

  def banner(self) -> str:
    return f"{self.kind}: {self.message}"


def _extract_error(r: httpx.Response) -> TaskApiError:
  try:
    payload = r.json()
  except ValueError:
    payload = None
  err = payload.get("error") if isinstance(payload, dict) else None
  if isinstance(err, dict) and err.get("kind"):
    return TaskApiError(kind=str(err["kind"]), message=str(err.get("message") or ""), status_code=r.status_code, details=err.get("details"))
  kind = "Internal" if r.status_code >= 500 else "Invariant"
  return TaskApiError(kind=kind, message=(r.text or "")[:500] or f"HTTP {r.status_code}", status_code=r.status_code)


class TaskApiClient:
  """
  Thin async wrapper over the tasks HTTP API.

  Every failure surfaces as `TaskApiError` carrying the server's error kind;
  transport timeouts become a retryable `Timeout`.
  """

  def __init__(
    self,
    *,
    base_url: str,
    token: str,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    transport: httpx.AsyncBaseTransport | None = None,
  ) -> None:
    headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
    self._client = httpx.AsyncClient(base_url=base_url.rstrip("/"), headers=headers, timeout=timeout, transport=transport)

  async def __aenter__(self) -> "TaskApiClient":
    return self

  async def __aexit__(self, *exc: Any) -> None:
    await self.aclose()

  async def aclose(self) -> None:
    await self._client.aclose()

  async def _request_json(self, method: str, path: str, **kwargs: Any) -> Any:
    try:
      r = await self._client.request(method, path, **kwargs)
    except httpx.TimeoutException as e:
      raise TaskApiError(kind="Timeout", message=f"{method} {path} timed out") from e
    except httpx.TransportError as e:
      raise TaskApiError(kind="Unavailable", message=str(e) or f"{method} {path} failed") from e
    if r.status_code >= 400:
      raise _extract_error(r)
    if r.status_code == 204:
      return None
    return r.json()

  # boards

  async def list_boards(self, workspace_id: str | None = None) -> list[dict]:
    params = {"workspace": workspace_id} if workspace_id else None
    return await self._request_json("GET", "/tasks/boards", params=params)

  async def board_view(self, board_id: str, *, search: str | None = None, include_archived: bool = False) -> dict:
    params: dict[str, Any] = {"include_archived": str(include_archived).lower()}
    if search:
      params["search"] = search
    return await self._request_json("GET", f"/tasks/boards/{board_id}/view", params=params)

  # items

  async def create_item(self, group_id: str, *, name: str, status: str | None = None, due_date: str | None = None) -> dict:
    body: dict[str, Any] = {"name": name}
    if status is not None:
      body["status"] = status
    if due_date is not None:
      body["due_date"] = due_date
    return await self._request_json("POST", f"/tasks/groups/{group_id}/items", json=body)

  async def patch_item(self, item_id: str, fields: dict[str, Any]) -> dict:
    return await self._request_json("PATCH", f"/tasks/items/{item_id}", json=fields)

  async def move_item(self, item_id: str, *, group_id: str, order_index: int | None = None) -> dict:
    return await self._request_json("POST", f"/tasks/items/{item_id}/move", json={"group_id": group_id, "order_index": order_index})

  async def archive_item(self, item_id: str) -> dict:
    return await self._request_json("POST", f"/tasks/items/{item_id}/archive")

  async def add_assignee(self, item_id: str, *, user_id: str | None = None, email: str | None = None) -> list[dict]:
    return await self._request_json("POST", f"/tasks/items/{item_id}/assignees", json={"user_id": user_id, "email": email})

  async def remove_assignee(self, item_id: str, user_id: str) -> list[dict]:
    return await self._request_json("DELETE", f"/tasks/items/{item_id}/assignees/{user_id}")

  async def post_update(self, item_id: str, body: str) -> dict:
    return await self._request_json("POST", f"/tasks/items/{item_id}/updates", json={"body": body})

  async def log_time(self, item_id: str, *, minutes: int, **fields: Any) -> dict:
    return await self._request_json("POST", f"/tasks/items/{item_id}/time-entries", json={"minutes": minutes, **fields})

  # cross-board

  async def my_work(self) -> dict:
    return await self._request_json("GET", "/tasks/my-work")

  async def board_report(self, board_ids: list[str], *, start_date: str | None = None, end_date: str | None = None) -> dict:
    return await self._request_json("POST", "/tasks/reports", json={"board_ids": board_ids, "start_date": start_date, "end_date": end_date})

  async def notifications(self, *, unread_only: bool = False) -> list[dict]:
    return await self._request_json("GET", "/tasks/notifications", params={"unread_only": str(unread_only).lower()})
