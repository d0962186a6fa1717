from __future__ import annotations

from typing import Any


class TaskError(Exception):
  kind = "Internal"
  status_code = 500

  def __init__(self, message: str, *, details: Any | None = None, headers: dict[str, str] | None = None) -> None:
    super().__init__(message)
    self.message = message
    self.details = details
    self.headers = headers

  def envelope(self) -> dict[str, Any]:
    err: dict[str, Any] = {"kind": self.kind, "message": self.message}
    if self.details is not None:
      err["details"] = self.details
    return {"error": err}


class NotFound(TaskError):
  kind = "NotFound"
  status_code = 404


class Forbidden(TaskError):
  kind = "Forbidden"
  status_code = 403


class Invariant(TaskError):
  kind = "Invariant"
  status_code = 400


class InvalidReference(TaskError):
  kind = "InvalidReference"
  status_code = 400


class Conflict(TaskError):
  kind = "Conflict"
  status_code = 409


class RateLimited(TaskError):
  kind = "RateLimited"
  status_code = 429

  def __init__(self, message: str, *, retry_after: int, details: dict[str, Any] | None = None) -> None:
    super().__init__(message, details={**(details or {}), "retry_after_seconds": retry_after}, headers={"Retry-After": str(retry_after)})
    self.retry_after = retry_after


class Timeout(TaskError):
  kind = "Timeout"
  status_code = 504


class Internal(TaskError):
  kind = "Internal"
  status_code = 500


class Unavailable(TaskError):
  kind = "Unavailable"
  status_code = 503


ERROR_KINDS: dict[str, type[TaskError]] = {
  cls.kind: cls for cls in (NotFound, Forbidden, Invariant, InvalidReference, Conflict, RateLimited, Timeout, Internal, Unavailable)
}

# HTTPException status codes raised by FastAPI/Starlette itself.
STATUS_KINDS: dict[int, str] = {
  400: "Invariant",
  401: "Forbidden",
  403: "Forbidden",
  404: "NotFound",
  405: "NotFound",
  409: "Conflict",
  413: "Invariant",
  422: "Invariant",
  429: "RateLimited",
  503: "Unavailable",
  504: "Timeout",
}
