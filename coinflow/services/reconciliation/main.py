"""Reconciliation job API + schedule lifecycle."""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy import select

from coinflow.common.config import settings
from coinflow.common.db import SessionLocal, as_utc
from coinflow.common.metrics import metrics_response
from coinflow.common.ops import enforce_api_key
from coinflow.common.startup import bootstrap_service
from coinflow.common.tracing import instrument_app
from coinflow.services.reconciliation.models import ReconciliationRun
from coinflow.services.reconciliation.service import ReconciliationService, aligned_window

bootstrap_service(
    [
        "PROVIDER_URL",
        "RECONCILIATION_WINDOW_MINUTES",
        "RECONCILIATION_INTERVAL_SECONDS",
        "RECONCILIATION_TOLERANCE_COINS",
    ]
)
service = ReconciliationService(SessionLocal)


class RunWindowRequest(BaseModel):
    """Explicit window; both bounds default to the previous aligned window."""

    window_start: datetime | None = None
    window_end: datetime | None = None


def _row(row: ReconciliationRun) -> dict:
    return {
        "id": row.id,
        "account_id": row.account_id,
        "window_start": row.window_start,
        "window_end": row.window_end,
        "status": row.status,
        "expected_coins": row.expected_coins,
        "actual_coins": row.actual_coins,
        "adjustment_entry_id": row.adjustment_entry_id,
        "attempts": row.attempts,
        "last_error": row.last_error,
        "claimed_at": row.claimed_at,
        "completed_at": row.completed_at,
    }


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run outbox publisher + reconciliation schedule with app lifecycle."""

    publisher_task = asyncio.create_task(service.outbox_publisher())
    schedule_task = asyncio.create_task(service.run_forever())
    yield
    publisher_task.cancel()
    schedule_task.cancel()
    await service.kafka.close()


app = FastAPI(title="Coinflow Reconciliation", lifespan=lifespan)
instrument_app(app)


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/ops/reconciliation/runs")
def list_runs(status: str | None = None, limit: int = 100, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    query = select(ReconciliationRun).order_by(ReconciliationRun.claimed_at.desc()).limit(limit)
    if status:
        query = query.where(ReconciliationRun.status == status.lower())
    with SessionLocal() as db:
        return [_row(row) for row in db.execute(query).scalars().all()]


@app.post("/ops/reconciliation/run")
def run_window(req: RunWindowRequest, x_api_key: str | None = Header(default=None)):
    """Reconcile one window now instead of waiting for the schedule."""

    enforce_api_key(x_api_key)
    window_start, window_end = aligned_window(service.clock(), settings.reconciliation_window_minutes)
    window_start = as_utc(req.window_start) or window_start
    window_end = as_utc(req.window_end) or window_end
    if window_end <= window_start:
        raise HTTPException(status_code=422, detail="window_end must be after window_start")
    runs = service.run_window(window_start, window_end)
    return [_row(row) for row in runs]
