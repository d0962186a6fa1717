from __future__ import annotations

from anchor_tasks.mentions import mention_chains, resolve_chains
from anchor_tasks.models import User

ALICE = User(id="u-alice", email="alice@ex.com", name="Alice", handle=None)
BOB = User(id="u-bob", email="bob@ex.com", name="Bob", handle="bobby")
MEMBERS = [ALICE, BOB]


def _ids(body: str) -> list[str]:
  return [u.id for u in resolve_chains(mention_chains(body), MEMBERS)]


def test_mention_chains_terminators() -> None:
  assert mention_chains("ping @bob") == [["bob"]]
  assert mention_chains("@a,@b;@c d") == [["a"], ["b"], ["c"]]
  assert mention_chains("hey @alice@ex.com please") == [["alice", "ex.com"]]
  assert mention_chains("mail me at a @ b") == []


def test_email_match_wins_and_is_case_insensitive() -> None:
  assert _ids("hey @ALICE@ex.com please review") == [ALICE.id]
  assert _ids("end of line @alice@ex.com") == [ALICE.id]


def test_handle_fallback_and_trailing_punctuation() -> None:
  assert _ids("thanks @bobby.") == [BOB.id]
  assert _ids("@bobby, @bob@ex.com") == [BOB.id]


def test_adjacent_mentions_without_space() -> None:
  assert _ids("@bobby@alice@ex.com") == [BOB.id, ALICE.id]


def test_unknown_handles_are_dropped() -> None:
  assert _ids("@carol and @alice") == []
  assert _ids("no mentions here") == []
