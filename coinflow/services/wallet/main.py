"""Wallet API + worker lifecycle.

Thin internal endpoints over the ledger and spend authorizer. Other services
call the ledger in-process; these routes exist for clients and ops.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header

from coinflow.common.db import SessionLocal
from coinflow.common.errors import CoinflowError, http_error
from coinflow.common.metrics import metrics_response
from coinflow.common.ops import enforce_api_key
from coinflow.common.startup import bootstrap_service
from coinflow.common.tracing import instrument_app
from coinflow.services.wallet.schemas import (
    AuthorizationResponse,
    BalanceResponse,
    EntryResponse,
    GiftRequest,
    InstantSpendRequest,
    ReverseRequest,
)
from coinflow.services.wallet.service import WalletService

bootstrap_service(["LEDGER_MAX_ATTEMPTS", "PLATFORM_FEE_PERCENT"])
service = WalletService(SessionLocal)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run outbox publisher + earnings consumer with app lifecycle."""

    publisher_task = asyncio.create_task(service.outbox_publisher())
    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    publisher_task.cancel()
    consumer_task.cancel()
    await service.kafka.close()


app = FastAPI(title="Coinflow Wallet", lifespan=lifespan)
instrument_app(app)


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/accounts/{account_id}/balance", response_model=BalanceResponse)
def get_balance(account_id: str):
    return BalanceResponse(account_id=account_id, balance=service.ledger.get_balance(account_id))


@app.get("/accounts/{account_id}/entries", response_model=list[EntryResponse])
def list_entries(account_id: str, limit: int = 50):
    return [EntryResponse.from_entry(entry) for entry in service.ledger.list_entries(account_id, limit=limit)]


@app.post("/spend/instant", response_model=AuthorizationResponse)
def spend_instant(req: InstantSpendRequest):
    """Debit a message unlock or ticket in one atomic step."""

    try:
        result = service.authorizer.authorize_instant(
            req.payer_id,
            req.amount,
            req.kind,
            req.reference_id,
            idempotency_key=req.idempotency_key,
            payee_id=req.payee_id,
        )
    except CoinflowError as exc:
        raise http_error(exc) from exc
    return AuthorizationResponse(**{k: getattr(result, k) for k in AuthorizationResponse.model_fields})


@app.post("/spend/gift", response_model=AuthorizationResponse)
def send_gift(req: GiftRequest):
    try:
        result = service.authorizer.send_gift(
            req.sender_id,
            req.creator_id,
            req.amount,
            req.reference_id,
            idempotency_key=req.idempotency_key,
        )
    except CoinflowError as exc:
        raise http_error(exc) from exc
    return AuthorizationResponse(**{k: getattr(result, k) for k in AuthorizationResponse.model_fields})


@app.post("/entries/{entry_id}/reverse", response_model=EntryResponse)
def reverse_entry(entry_id: str, req: ReverseRequest, x_api_key: str | None = Header(default=None)):
    """Manually reverse a committed entry (ops only)."""

    enforce_api_key(x_api_key)
    try:
        entry = service.ledger.reverse(entry_id, req.reason)
    except CoinflowError as exc:
        raise http_error(exc) from exc
    return EntryResponse.from_entry(entry)
