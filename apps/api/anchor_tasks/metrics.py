from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from time import monotonic


@dataclass
class RequestSample:
  ts: datetime
  status_code: int
  latency_ms: float


class RuntimeMetrics:
  """In-process counters behind /tasks/system/status."""

  def __init__(self) -> None:
    self._started_monotonic = monotonic()
    self._samples: deque[RequestSample] = deque()
    self._automation_outcomes: Counter[str] = Counter()
    self._last_sweep: dict | None = None
    self._lock = Lock()

  def uptime_seconds(self) -> int:
    return max(0, int(monotonic() - self._started_monotonic))

  def observe_request(self, status_code: int, latency_ms: float) -> None:
    now = datetime.now(timezone.utc)
    with self._lock:
      self._samples.append(RequestSample(ts=now, status_code=status_code, latency_ms=latency_ms))
      cutoff = now - timedelta(hours=1)
      while self._samples and self._samples[0].ts < cutoff:
        self._samples.popleft()

  def observe_automation(self, outcome: str) -> None:
    with self._lock:
      self._automation_outcomes[outcome] += 1

  def observe_sweep(self, *, kind: str, processed: int, elapsed_ms: float, timed_out: bool = False) -> None:
    with self._lock:
      self._last_sweep = {
        "kind": kind,
        "processed": processed,
        "elapsed_ms": round(elapsed_ms, 2),
        "timed_out": timed_out,
        "at": datetime.now(timezone.utc).isoformat(),
      }

  def snapshot(self) -> dict:
    with self._lock:
      samples = list(self._samples)
      outcomes = dict(self._automation_outcomes)
      last_sweep = dict(self._last_sweep) if self._last_sweep else None

    errors = sum(1 for s in samples if s.status_code >= 500)
    p95_ms = 0.0
    if samples:
      latencies = sorted(s.latency_ms for s in samples)
      p95_ms = latencies[max(0, int(len(latencies) * 0.95) - 1)]

    return {
      "uptime_seconds": self.uptime_seconds(),
      "request_count_1h": len(samples),
      "error_count_1h": errors,
      "p95_latency_ms_1h": round(p95_ms, 2),
      "automation_outcomes": outcomes,
      "last_sweep": last_sweep,
    }


runtime_metrics = RuntimeMetrics()
