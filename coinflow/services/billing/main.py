"""Billing API + tick loop lifecycle.

Calls and AI-twin sessions are opened, kept alive and ended here; the tick loop
bills them once per interval.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from pydantic import BaseModel, Field

from coinflow.common.db import SessionLocal
from coinflow.common.errors import CoinflowError, http_error
from coinflow.common.metrics import metrics_response
from coinflow.common.startup import bootstrap_service
from coinflow.common.tracing import instrument_app
from coinflow.services.billing.service import BillingService

bootstrap_service(
    [
        "BILLING_TICK_INTERVAL_SECONDS",
        "BILLING_TICK_TIMEOUT_SECONDS",
        "BILLING_HEARTBEAT_TIMEOUT_SECONDS",
        "PLATFORM_FEE_PERCENT",
    ]
)
service = BillingService(SessionLocal)


class StartSessionRequest(BaseModel):
    kind: str = Field(pattern="^(call|ai_session)$")
    payer_id: str = Field(min_length=1)
    payee_id: str = Field(min_length=1)
    rate_per_minute: int = Field(gt=0)
    session_id: str | None = None


class EndSessionRequest(BaseModel):
    """Participant asking to end the session."""

    by: str = Field(min_length=1)


class SessionResponse(BaseModel):
    id: str
    kind: str
    payer_id: str
    payee_id: str
    rate_per_minute: int
    status: str
    minutes_billed: int
    termination_requested: bool
    end_reason: str | None
    unbilled_minutes: int
    started_at: datetime
    ended_at: datetime | None

    @classmethod
    def from_row(cls, row) -> "SessionResponse":
        return cls(**{name: getattr(row, name) for name in cls.model_fields})


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run outbox publisher + tick loop with app lifecycle."""

    publisher_task = asyncio.create_task(service.outbox_publisher())
    tick_task = asyncio.create_task(service.run_tick_loop())
    yield
    publisher_task.cancel()
    tick_task.cancel()
    await service.kafka.close()


app = FastAPI(title="Coinflow Billing", lifespan=lifespan)
instrument_app(app)


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.post("/sessions", response_model=SessionResponse)
def start_session(req: StartSessionRequest):
    try:
        row = service.start_session(req.kind, req.payer_id, req.payee_id, req.rate_per_minute, req.session_id)
    except CoinflowError as exc:
        raise http_error(exc) from exc
    return SessionResponse.from_row(row)


@app.get("/sessions/{session_id}", response_model=SessionResponse)
def get_session(session_id: str):
    try:
        row = service.get_session(session_id)
    except CoinflowError as exc:
        raise http_error(exc) from exc
    return SessionResponse.from_row(row)


@app.post("/sessions/{session_id}/heartbeat")
def heartbeat(session_id: str):
    return {"session_id": session_id, "active": service.heartbeat(session_id)}


@app.post("/sessions/{session_id}/end", response_model=SessionResponse)
def end_session(session_id: str, req: EndSessionRequest):
    """End the session and bill the trailing partial minute."""

    try:
        row = service.end_session(session_id, req.by)
    except CoinflowError as exc:
        raise http_error(exc) from exc
    return SessionResponse.from_row(row)
