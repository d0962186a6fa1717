from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_tasks.models import User, WorkspaceMember

_TERMINATORS = {",", ";"}
_TRAILING_PUNCT = ".:!?)]}'\""


def mention_chains(body: str) -> list[list[str]]:
  """
  Split a body into runs of `@token` captures.

  A token is the contiguous non-whitespace text after `@`, ended by
  whitespace, `,`, `;`, end of string or another `@`. Tokens separated only
  by `@` form one chain so `@alice@ex.com` can still be read as an email.
  """
  chains: list[list[str]] = []
  text = body or ""
  i = 0
  n = len(text)
  while i < n:
    if text[i] != "@":
      i += 1
      continue
    chain: list[str] = []
    while i < n and text[i] == "@":
      j = i + 1
      while j < n and not text[j].isspace() and text[j] not in _TERMINATORS and text[j] != "@":
        j += 1
      chain.append(text[i + 1 : j])
      i = j
    tokens = [t for t in chain if t]
    if tokens:
      chains.append(chain)
  return chains


async def member_directory(db: AsyncSession, workspace_id: str) -> list[User]:
  res = await db.execute(
    select(User)
    .join(WorkspaceMember, WorkspaceMember.user_id == User.id)
    .where(WorkspaceMember.workspace_id == workspace_id, User.active.is_(True))
    .order_by(User.email.asc())
  )
  return list(res.scalars().all())


def resolve_chains(chains: list[list[str]], members: list[User]) -> list[User]:
  by_email = {u.email.lower(): u for u in members}
  by_handle = {u.handle.lower(): u for u in members if u.handle}

  def match(token: str, *, email_only: bool = False) -> User | None:
    key = token.lower()
    candidates = [key]
    stripped = key.rstrip(_TRAILING_PUNCT)
    if stripped and stripped != key:
      candidates.append(stripped)
    for c in candidates:
      if c in by_email:
        return by_email[c]
    if email_only:
      return None
    for c in candidates:
      if c in by_handle:
        return by_handle[c]
    return None

  out: list[User] = []
  seen: set[str] = set()

  def add(u: User | None) -> None:
    if u is not None and u.id not in seen:
      seen.add(u.id)
      out.append(u)

  for chain in chains:
    i = 0
    while i < len(chain):
      hit = None
      # Longest `@`-joined span that is a member email wins.
      for j in range(len(chain) - 1, i, -1):
        hit = match("@".join(chain[i : j + 1]), email_only=True)
        if hit is not None:
          add(hit)
          i = j + 1
          break
      if hit is not None:
        continue
      if chain[i]:
        add(match(chain[i]))
      i += 1
  return out


async def resolve_mentions(db: AsyncSession, workspace_id: str, body: str) -> list[User]:
  """Workspace members mentioned in `body`, in order of first mention. Unresolved handles are dropped."""
  chains = mention_chains(body)
  if not chains:
    return []
  return resolve_chains(chains, await member_directory(db, workspace_id))
