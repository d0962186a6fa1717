from __future__ import annotations

import asyncio
import logging
from time import monotonic

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.trustedhost import TrustedHostMiddleware

from anchor_tasks.automations.engine import run_due_soon_sweep
from anchor_tasks.cleanup import purge_archived_items
from anchor_tasks.config import settings
from anchor_tasks.db import SessionLocal
from anchor_tasks.errors import STATUS_KINDS, Internal, Invariant, TaskError
from anchor_tasks.labels import ensure_default_labels
from anchor_tasks.metrics import runtime_metrics
from anchor_tasks.routers.automations import router as automations_router
from anchor_tasks.routers.boards import router as boards_router
from anchor_tasks.routers.items import router as items_router
from anchor_tasks.routers.notifications import router as notifications_router
from anchor_tasks.routers.reports import router as reports_router
from anchor_tasks.routers.system_status import router as system_status_router
from anchor_tasks.routers.workspaces import router as workspaces_router

logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
  title="Anchor Hub Tasks API",
  version=settings.app_version,
  docs_url="/docs" if settings.api_docs_enabled else None,
  redoc_url="/redoc" if settings.api_docs_enabled else None,
  openapi_url="/openapi.json" if settings.api_docs_enabled else None,
)


@app.exception_handler(TaskError)
async def _task_error_handler(_, exc: TaskError) -> JSONResponse:
  return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.envelope()), headers=exc.headers)


@app.exception_handler(StarletteHTTPException)
async def _http_error_handler(_, exc: StarletteHTTPException) -> JSONResponse:
  kind = STATUS_KINDS.get(exc.status_code, "Internal")
  return JSONResponse(
    status_code=exc.status_code,
    content={"error": {"kind": kind, "message": str(exc.detail)}},
    headers=getattr(exc, "headers", None),
  )


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(_, exc: RequestValidationError) -> JSONResponse:
  errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
  err = Invariant("Request validation failed", details={"errors": errors})
  return JSONResponse(status_code=err.status_code, content=err.envelope())


@app.exception_handler(Exception)
async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
  logger.exception("unhandled error on %s %s", request.method, request.url.path)
  err = Internal("Internal server error")
  return JSONResponse(status_code=err.status_code, content=err.envelope())


app.add_middleware(
  CORSMiddleware,
  allow_origins=settings.cors_origin_list(),
  allow_origin_regex=settings.cors_origin_regex,
  allow_credentials=True,
  allow_methods=["*"],
  allow_headers=["*"],
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.trusted_host_list())

app.include_router(workspaces_router)
app.include_router(boards_router)
app.include_router(items_router)
app.include_router(automations_router)
app.include_router(reports_router)
app.include_router(notifications_router)
app.include_router(system_status_router)


@app.middleware("http")
async def _request_metrics_middleware(request, call_next):
  start = monotonic()
  response = await call_next(request)
  elapsed_ms = (monotonic() - start) * 1000.0
  runtime_metrics.observe_request(response.status_code, elapsed_ms)
  response.headers.setdefault("X-Content-Type-Options", "nosniff")
  response.headers.setdefault("X-Frame-Options", "DENY")
  response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
  return response


@app.get("/health")
async def health() -> dict:
  return {"ok": True}


@app.get("/version")
async def version() -> dict:
  return {"version": settings.app_version, "build_sha": settings.build_sha}


_due_soon_loop_task: asyncio.Task | None = None
_purge_loop_task: asyncio.Task | None = None


def _is_test_db() -> bool:
  db_name = settings.database_url.rsplit("/", 1)[-1]
  return "test" in db_name


async def _due_soon_once() -> None:
  start = monotonic()
  async with SessionLocal() as db:
    try:
      fired = await asyncio.wait_for(run_due_soon_sweep(db), timeout=settings.due_soon_sweep_timeout_seconds)
    except asyncio.TimeoutError:
      # Unprocessed items are picked up next cycle; fingerprints prevent repeats.
      logger.warning("due_soon sweep hit the %ss cap", settings.due_soon_sweep_timeout_seconds)
      runtime_metrics.observe_sweep(kind="due_soon", processed=0, elapsed_ms=(monotonic() - start) * 1000.0, timed_out=True)
      return
  runtime_metrics.observe_sweep(kind="due_soon", processed=fired, elapsed_ms=(monotonic() - start) * 1000.0)


async def _due_soon_loop() -> None:
  while True:
    try:
      await _due_soon_once()
    except Exception:
      logger.exception("due_soon sweep failed")
    await asyncio.sleep(max(60, int(settings.due_soon_sweep_minutes) * 60))


async def _purge_loop() -> None:
  while True:
    await asyncio.sleep(max(60, int(settings.purge_interval_minutes) * 60))
    start = monotonic()
    async with SessionLocal() as db:
      try:
        purged = await purge_archived_items(db)
      except Exception:
        logger.exception("archived item purge failed")
        continue
    runtime_metrics.observe_sweep(kind="purge", processed=purged, elapsed_ms=(monotonic() - start) * 1000.0)


@app.on_event("startup")
async def _startup() -> None:
  global _due_soon_loop_task, _purge_loop_task
  if _is_test_db():
    return
  if not settings.app_secret or settings.app_secret.strip().lower() in {"dev-secret-change-me", "replace_with_strong_random_secret"}:
    raise RuntimeError("APP_SECRET is required and must not be a placeholder")
  async with SessionLocal() as db:
    await ensure_default_labels(db)
    await db.commit()
  if _due_soon_loop_task is None:
    _due_soon_loop_task = asyncio.create_task(_due_soon_loop())
  if _purge_loop_task is None:
    _purge_loop_task = asyncio.create_task(_purge_loop())
