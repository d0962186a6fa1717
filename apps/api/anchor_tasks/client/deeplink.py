from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from urllib.parse import parse_qs, urlencode, urlsplit

from anchor_tasks.client.api import TaskApiClient, TaskApiError
from anchor_tasks.client.projection import BoardProjection

logger = logging.getLogger(__name__)

PANES = ("home", "boards", "my-work", "automations", "reports")
TASKS_PATH = "/tasks"


@dataclass(frozen=True)
class DeepLink:
  pane: str = "home"
  workspace: str | None = None
  board: str | None = None
  item: str | None = None

  def to_url(self) -> str:
    params = [("pane", self.pane)]
    for key in ("workspace", "board", "item"):
      value = getattr(self, key)
      if value:
        params.append((key, value))
    return f"{TASKS_PATH}?{urlencode(params)}"


def _first(qs: dict[str, list[str]], key: str) -> str | None:
  values = qs.get(key) or []
  value = values[0].strip() if values else ""
  return value or None


def parse_link(url: str) -> DeepLink:
  """Parse `/tasks?pane=..&workspace=..&board=..&item=..`. Unknown panes fall back to home."""
  qs = parse_qs(urlsplit(url).query)
  pane = (_first(qs, "pane") or "home").lower()
  if pane not in PANES:
    pane = "home"
  board = _first(qs, "board")
  return DeepLink(pane=pane, workspace=_first(qs, "workspace"), board=board, item=_first(qs, "item") if board else None)


async def follow_link(api: TaskApiClient, link: DeepLink) -> tuple[DeepLink, BoardProjection | None]:
  """
  Open a deep link: load the board, then resolve the item once items are known.

  Missing boards or items are dropped from the link without raising.
  """
  if not link.board:
    return link, None
  projection = BoardProjection(api, link.board)
  try:
    snapshot = await projection.load()
  except TaskApiError as e:
    if e.kind not in ("NotFound", "Forbidden"):
      raise
    logger.info("deep link board %s unavailable (%s), clearing", link.board, e.kind)
    return replace(link, board=None, item=None), None
  if link.workspace and snapshot.board.get("workspace_id") != link.workspace:
    link = replace(link, workspace=snapshot.board.get("workspace_id"))
  if link.item and snapshot.item(link.item) is None:
    link = replace(link, item=None)
  return link, projection
