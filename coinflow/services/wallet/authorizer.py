"""Spend authorization: the gate every paid feature goes through.

Instant spends (message unlocks, gifts, tickets) are a single atomic debit.
Metered sessions take a `Hold` up front, a sufficiency check that commits
nothing, and later settle it in per-tick debits through the billing meter.

Platform fees are taken at debit time: the payer is charged gross, and an
earnings event carrying the payee's net share is written to the outbox in the
same transaction. `WalletService.handle_earnings` credits it idempotently.
"""

from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from coinflow.common.config import settings
from coinflow.common.errors import InsufficientFunds, ValidationError
from coinflow.common.metrics import insufficient_funds_total
from coinflow.common.outbox import enqueue_event
from coinflow.services.wallet.ledger import WalletLedger
from coinflow.services.wallet.models import LedgerEntry

EARNINGS_TOPIC = "wallet.earnings"
INSTANT_KINDS = {"message_unlock", "gift_send", "ticket_purchase"}
METERED_KINDS = {"call_debit", "ai_session_debit"}


@dataclass(frozen=True)
class Hold:
    """Proof that the payer could afford at least one billing unit."""

    payer_id: str
    minimum_amount: int
    kind: str
    payee_id: str | None = None
    reference_id: str | None = None
    available: int | None = None


@dataclass(frozen=True)
class AuthorizationResult:
    entry_id: str
    payer_id: str
    amount: int
    kind: str
    reference_id: str | None
    idempotency_key: str
    balance_after: int

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> "AuthorizationResult":
        return cls(
            entry_id=entry.id,
            payer_id=entry.account_id,
            amount=-entry.amount,
            kind=entry.kind,
            reference_id=entry.reference_id,
            idempotency_key=entry.idempotency_key,
            balance_after=entry.balance_after,
        )


def split_fee(gross: int, fee_percent: int) -> tuple[int, int]:
    """Return `(net, fee)`; the fee rounds down so payees never lose a partial coin."""

    fee = gross * fee_percent // 100
    return gross - fee, fee


class SpendAuthorizer:
    """Debits and holds against the ledger on behalf of paid features."""

    def __init__(self, ledger: WalletLedger, fee_percent: int | None = None) -> None:
        self.ledger = ledger
        self.fee_percent = settings.platform_fee_percent if fee_percent is None else fee_percent

    def authorize_instant(
        self,
        payer_id: str,
        amount: int,
        kind: str,
        reference_id: str | None,
        idempotency_key: str | None = None,
        payee_id: str | None = None,
        fee_percent: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuthorizationResult:
        """One atomic debit. `InsufficientFunds` propagates to the caller unchanged."""

        if kind not in INSTANT_KINDS:
            raise ValidationError(f"{kind!r} is not an instant spend kind")
        self.ledger.validate_request(payer_id, amount, kind)
        key = idempotency_key or f"{kind}:{uuid4()}"
        fee = self.fee_percent if fee_percent is None else fee_percent
        entry = self.ledger.execute(
            lambda db: self._debit(db, payer_id, amount, kind, reference_id, key, payee_id, fee, metadata),
            name="authorize_instant",
        )
        return AuthorizationResult.from_entry(entry)

    def send_gift(
        self,
        sender_id: str,
        creator_id: str,
        amount: int,
        reference_id: str | None,
        idempotency_key: str | None = None,
    ) -> AuthorizationResult:
        return self.authorize_instant(
            sender_id,
            amount,
            "gift_send",
            reference_id,
            idempotency_key=idempotency_key,
            payee_id=creator_id,
        )

    def authorize_hold(
        self,
        payer_id: str,
        minimum_amount: int,
        kind: str = "call_debit",
        payee_id: str | None = None,
        reference_id: str | None = None,
    ) -> Hold:
        """Check the payer can cover `minimum_amount` without committing a debit."""

        if kind not in METERED_KINDS:
            raise ValidationError(f"{kind!r} is not a metered spend kind")
        self.ledger.validate_request(payer_id, minimum_amount, kind)
        available = self.ledger.get_balance(payer_id)
        if available < minimum_amount:
            insufficient_funds_total.labels(service=self.ledger.service_name, kind=kind).inc()
            raise InsufficientFunds(payer_id, minimum_amount, available)
        return Hold(
            payer_id=payer_id,
            minimum_amount=minimum_amount,
            kind=kind,
            payee_id=payee_id,
            reference_id=reference_id,
            available=available,
        )

    def settle_hold(self, hold: Hold, actual_amount: int, idempotency_key: str, db=None) -> LedgerEntry:
        """Debit `actual_amount` against a hold.

        With `db`, the debit joins the caller's transaction and the caller owns
        commit and retry. Without it, the debit runs in its own ledger transaction.
        """

        self.ledger.validate_request(hold.payer_id, actual_amount, hold.kind)

        def operation(session) -> LedgerEntry:
            return self._debit(
                session,
                hold.payer_id,
                actual_amount,
                hold.kind,
                hold.reference_id,
                idempotency_key,
                hold.payee_id,
                self.fee_percent,
                None,
            )

        if db is not None:
            return operation(db)
        return self.ledger.execute(operation, name="settle_hold")

    def _debit(
        self,
        db,
        payer_id: str,
        amount: int,
        kind: str,
        reference_id: str | None,
        idempotency_key: str,
        payee_id: str | None,
        fee_percent: int,
        metadata: dict[str, Any] | None,
    ) -> LedgerEntry:
        existing = self.ledger.find_by_key(db, idempotency_key)
        if existing is not None:
            return self.ledger.post_debit(db, payer_id, amount, kind, reference_id, idempotency_key, metadata)
        entry = self.ledger.post_debit(db, payer_id, amount, kind, reference_id, idempotency_key, metadata)
        if payee_id:
            net, fee = split_fee(amount, fee_percent)
            if net > 0:
                enqueue_event(
                    db,
                    topic=EARNINGS_TOPIC,
                    aggregate_type="ledger_entry",
                    aggregate_id=entry.id,
                    payload={
                        "account_id": payee_id,
                        "payer_id": payer_id,
                        "gross": amount,
                        "net": net,
                        "platform_fee": fee,
                        "source_kind": kind,
                        "source_entry_id": entry.id,
                        "reference_id": reference_id,
                        "idempotency_key": f"{idempotency_key}:earnings",
                    },
                )
        return entry
