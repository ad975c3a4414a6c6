"""API request/response schemas for wallet endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class InstantSpendRequest(BaseModel):
    """One-shot debit for a message unlock or ticket."""

    payer_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    kind: str = Field(min_length=1)
    reference_id: str | None = None
    payee_id: str | None = None
    idempotency_key: str | None = Field(default=None, min_length=5)


class GiftRequest(BaseModel):
    sender_id: str = Field(min_length=1)
    creator_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    reference_id: str | None = None
    idempotency_key: str | None = Field(default=None, min_length=5)


class ReverseRequest(BaseModel):
    """Body required for manual reversals."""

    reason: str = Field(min_length=1)


class BalanceResponse(BaseModel):
    account_id: str
    balance: int


class AuthorizationResponse(BaseModel):
    entry_id: str
    payer_id: str
    amount: int
    kind: str
    reference_id: str | None
    balance_after: int


class EntryResponse(BaseModel):
    id: str
    account_id: str
    amount: int
    kind: str
    reference_id: str | None
    status: str
    balance_after: int
    metadata: dict[str, Any] | None = None
    created_at: datetime
    reversed_at: datetime | None = None

    @classmethod
    def from_entry(cls, entry) -> "EntryResponse":
        return cls(
            id=entry.id,
            account_id=entry.account_id,
            amount=entry.amount,
            kind=entry.kind,
            reference_id=entry.reference_id,
            status=entry.status,
            balance_after=entry.balance_after,
            metadata=entry.details,
            created_at=entry.created_at,
            reversed_at=entry.reversed_at,
        )
