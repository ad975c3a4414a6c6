"""Settlement worker API + consumer lifecycle.

Consumes provider payment events and exposes the poison review queue for ops.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException

from coinflow.common.db import SessionLocal
from coinflow.common.errors import CoinflowError, http_error
from coinflow.common.metrics import metrics_response
from coinflow.common.ops import enforce_api_key
from coinflow.common.startup import bootstrap_service
from coinflow.common.tracing import instrument_app
from coinflow.services.settlement.service import SettlementService

bootstrap_service(
    [
        "SETTLEMENT_PROVIDERS",
        "SETTLEMENT_CURRENCY",
        "SETTLEMENT_MAX_ATTEMPTS",
        "CENTS_PER_COIN",
    ]
)
service = SettlementService(SessionLocal)


def _row(row) -> dict:
    return {
        "external_id": row.external_id,
        "provider": row.provider,
        "account_id": row.account_id,
        "amount_cents": row.amount_cents,
        "currency": row.currency,
        "status": row.status,
        "attempts": row.attempts,
        "last_error": row.last_error,
        "needs_review": row.needs_review,
        "ledger_entry_id": row.ledger_entry_id,
        "created_at": row.created_at,
        "processed_at": row.processed_at,
    }


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run outbox publisher + provider event consumer with app lifecycle."""

    publisher_task = asyncio.create_task(service.outbox_publisher())
    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    publisher_task.cancel()
    consumer_task.cancel()
    await service.kafka.close()


app = FastAPI(title="Coinflow Settlement Worker", lifespan=lifespan)
instrument_app(app)


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/settlements/{external_id}")
def get_settlement(external_id: str):
    row = service.get_event(external_id)
    if row is None:
        raise HTTPException(status_code=404, detail="settlement event not found")
    return _row(row)


@app.get("/ops/poison")
def list_poison(limit: int = 100, x_api_key: str | None = Header(default=None)):
    """List settlement events flagged for review."""

    enforce_api_key(x_api_key)
    return [_row(row) for row in service.list_poison(limit=limit)]


@app.post("/ops/poison/{external_id}/replay")
def replay_poison(external_id: str, x_api_key: str | None = Header(default=None)):
    """Re-apply one poisoned event from its stored payload."""

    enforce_api_key(x_api_key)
    try:
        row = service.replay(external_id)
    except CoinflowError as exc:
        raise http_error(exc) from exc
    return _row(row)
