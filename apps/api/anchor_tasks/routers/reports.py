from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_tasks.deps import get_current_user, get_db, require_board_capability
from anchor_tasks.models import Board, User, utcnow
from anchor_tasks.rate_limit import limiter
from anchor_tasks.reports.csv_export import REPORT_HEADER, encode_rows, report_records
from anchor_tasks.reports.service import billing_rows, board_report_rows, category_rollup
from anchor_tasks.schemas import BillingReportIn, ReportIn
from anchor_tasks.time_accounting import date_window

router = APIRouter(prefix="/tasks/reports", tags=["reports"])


async def _readable_boards(db: AsyncSession, board_ids: list[str], user: User) -> list[Board]:
  boards: list[Board] = []
  for board_id in dict.fromkeys(board_ids):
    b, _ = await require_board_capability(board_id, "read", user, db)
    boards.append(b)
  return boards


@router.post("")
async def board_report(payload: ReportIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
  limiter.check("reports", user.id)
  window = date_window(payload.start_date, payload.end_date)
  boards = await _readable_boards(db, payload.board_ids, user)
  return {
    "start_date": payload.start_date,
    "end_date": payload.end_date,
    "rows": await board_report_rows(db, boards, window),
  }


@router.post("/export.csv")
async def board_report_csv(payload: ReportIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> StreamingResponse:
  limiter.check("reports", user.id)
  window = date_window(payload.start_date, payload.end_date)
  rows = await board_report_rows(db, await _readable_boards(db, payload.board_ids, user), window)
  filename = f"board-report-{utcnow().date().isoformat()}.csv"
  return StreamingResponse(
    encode_rows(REPORT_HEADER, report_records(rows)),
    media_type="text/csv; charset=utf-8",
    headers={"Content-Disposition": f'attachment; filename="{filename}"'},
  )


@router.post("/billing")
async def billing_report(payload: BillingReportIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
  limiter.check("reports", user.id)
  window = date_window(payload.start_date, payload.end_date)
  boards = await _readable_boards(db, payload.board_ids, user)
  rows = await billing_rows(db, boards, window, work_category=payload.work_category, user_ids=payload.user_ids)
  return {
    "rows": [r.as_dict() for r in rows],
    "categories": category_rollup(rows),
    "total_minutes": sum(r.total_minutes for r in rows),
    "billable_minutes": sum(r.billable_minutes for r in rows),
  }
