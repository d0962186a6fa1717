from __future__ import annotations

import logging
import time
from threading import Lock

import redis

from anchor_tasks.config import settings
from anchor_tasks.errors import RateLimited

logger = logging.getLogger(__name__)

# scope -> settings attribute holding the per-minute budget
SCOPES = {
  "updates": "rate_limit_updates_per_minute",
  "time_entries": "rate_limit_time_entries_per_minute",
  "reports": "rate_limit_reports_per_minute",
}


class RateLimiter:
  """
  Per-user fixed windows for the write-heavy endpoints (posting updates,
  logging time, running reports).

  Windows are aligned to wall-clock multiples of `window_seconds`, so the
  Redis and in-memory paths agree on when a window rolls over.
  """

  def __init__(self, redis_url: str | None = None, *, window_seconds: int = 60) -> None:
    self.window_seconds = window_seconds
    self._lock = Lock()
    self._counts: dict[tuple[str, str, int], int] = {}
    self._redis = redis.Redis.from_url(redis_url, decode_responses=True) if redis_url else None

  def budget(self, scope: str) -> int:
    return int(getattr(settings, SCOPES[scope]))

  def _window(self, now: float) -> tuple[int, int]:
    idx = int(now // self.window_seconds)
    retry_after = max(1, int((idx + 1) * self.window_seconds - now))
    return idx, retry_after

  def _count_redis(self, scope: str, subject: str, idx: int) -> int:
    rk = f"rl:{scope}:{subject}:{idx}"
    pipe = self._redis.pipeline()
    pipe.incr(rk, 1)
    pipe.expire(rk, self.window_seconds * 2)
    count, _ = pipe.execute()
    return int(count)

  def _count_memory(self, scope: str, subject: str, idx: int) -> int:
    with self._lock:
      for k in [k for k in self._counts if k[2] < idx]:
        del self._counts[k]
      key = (scope, subject, idx)
      self._counts[key] = self._counts.get(key, 0) + 1
      return self._counts[key]

  def check(self, scope: str, subject: str) -> None:
    """Count one request for `subject` in `scope`; raise RateLimited once the budget is spent."""
    idx, retry_after = self._window(time.time())
    count = None
    if self._redis is not None:
      try:
        count = self._count_redis(scope, subject, idx)
      except redis.RedisError:
        logger.warning("redis rate limiter unavailable, counting in process", exc_info=True)
    if count is None:
      count = self._count_memory(scope, subject, idx)
    limit = self.budget(scope)
    if count > limit:
      raise RateLimited(
        "Too many requests",
        retry_after=retry_after,
        details={"scope": scope, "limit": limit, "window_seconds": self.window_seconds},
      )

  def reset(self) -> None:
    with self._lock:
      self._counts.clear()


limiter = RateLimiter(settings.redis_url)
