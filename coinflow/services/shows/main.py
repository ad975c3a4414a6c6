"""Shows API + reaper lifecycle."""

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
from coinflow.services.shows.service import ShowService

bootstrap_service(["SHOW_HEARTBEAT_TIMEOUT_SECONDS", "SHOW_REAPER_INTERVAL_SECONDS"])
service = ShowService(SessionLocal)


class CreateShowRequest(BaseModel):
    creator_id: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=200)
    ticket_price: int = Field(ge=0)
    scheduled_start: datetime | None = None


class ActorRequest(BaseModel):
    """Who is acting on the show."""

    user_id: str = Field(min_length=1)


class GiftRequest(BaseModel):
    sender_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    idempotency_key: str | None = Field(default=None, min_length=5)


def _show(row) -> dict:
    return {
        "id": row.id,
        "creator_id": row.creator_id,
        "title": row.title,
        "ticket_price": row.ticket_price,
        "status": row.status,
        "room_name": row.room_name,
        "scheduled_start": row.scheduled_start,
        "started_at": row.started_at,
        "ended_at": row.ended_at,
        "tickets_sold": row.tickets_sold,
        "total_revenue": row.total_revenue,
        "attendee_count": row.attendee_count,
        "total_gifts": row.total_gifts,
        "ended_by": row.ended_by,
    }


def _ticket(row) -> dict:
    return {
        "id": row.id,
        "show_id": row.show_id,
        "holder_id": row.holder_id,
        "access_granted": row.access_granted,
        "ledger_entry_id": row.ledger_entry_id,
        "purchased_at": row.purchased_at,
        "checked_in_at": row.checked_in_at,
    }


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run outbox publisher + stale show reaper with app lifecycle."""

    publisher_task = asyncio.create_task(service.outbox_publisher())
    reaper_task = asyncio.create_task(service.run_reaper())
    yield
    publisher_task.cancel()
    reaper_task.cancel()
    await service.kafka.close()


app = FastAPI(title="Coinflow Shows", lifespan=lifespan)
instrument_app(app)


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.post("/shows")
def create_show(req: CreateShowRequest):
    try:
        row = service.create_show(req.creator_id, req.title, req.ticket_price, req.scheduled_start)
    except CoinflowError as exc:
        raise http_error(exc) from exc
    return _show(row)


@app.get("/shows/{show_id}")
def get_show(show_id: str):
    try:
        return _show(service.get_show(show_id))
    except CoinflowError as exc:
        raise http_error(exc) from exc


@app.post("/shows/{show_id}/tickets")
def purchase_ticket(show_id: str, req: ActorRequest):
    """Buy a ticket; access is granted once the debit commits."""

    try:
        return _ticket(service.purchase_ticket(show_id, req.user_id))
    except CoinflowError as exc:
        raise http_error(exc) from exc


@app.post("/shows/{show_id}/start")
def start_show(show_id: str, req: ActorRequest):
    try:
        return _show(service.start_show(show_id, req.user_id))
    except CoinflowError as exc:
        raise http_error(exc) from exc


@app.post("/shows/{show_id}/join")
def join_show(show_id: str, req: ActorRequest):
    try:
        ticket = service.join_show(show_id, req.user_id)
    except CoinflowError as exc:
        raise http_error(exc) from exc
    return {"show_id": show_id, "user_id": req.user_id, "host": ticket is None}


@app.post("/shows/{show_id}/heartbeat")
def heartbeat(show_id: str):
    return {"show_id": show_id, "live": service.heartbeat(show_id)}


@app.post("/shows/{show_id}/gifts")
def send_gift(show_id: str, req: GiftRequest):
    try:
        result = service.send_gift(show_id, req.sender_id, req.amount, req.idempotency_key)
    except CoinflowError as exc:
        raise http_error(exc) from exc
    return {"entry_id": result.entry_id, "amount": result.amount, "balance_after": result.balance_after}


@app.post("/shows/{show_id}/end")
def end_show(show_id: str, req: ActorRequest):
    """Creator ends the show; `system` ends belong to the reaper."""

    if req.user_id == "system":
        raise http_error(CoinflowError("system ends are reserved for the reaper"))
    try:
        return _show(service.end_show(show_id, req.user_id))
    except CoinflowError as exc:
        raise http_error(exc) from exc
