from __future__ import annotations

import hashlib
import hmac
import secrets

from anchor_tasks.config import settings

API_TOKEN_PREFIX = "atk_"


def api_token_hash(token: str) -> str:
  # Keyed hash so DB leaks do not allow offline token matching.
  key = (settings.app_secret or "").encode("utf-8")
  return hmac.new(key, (token or "").strip().encode("utf-8"), hashlib.sha256).hexdigest()


def generate_api_token() -> str:
  return f"{API_TOKEN_PREFIX}{secrets.token_urlsafe(32)}"
