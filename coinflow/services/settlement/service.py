"""Settlement worker: turns provider payment events into ledger credits.

Delivery is at-least-once, so every event is deduplicated on the provider's
`external_id`, which is also the ledger idempotency key. Retryable failures are
retried with exponential backoff; anything that cannot be applied ends on the
poison topic flagged for review.
"""

import asyncio
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError

from coinflow.common.config import settings
from coinflow.common.db import utcnow
from coinflow.common.errors import CoinflowError, DuplicateEvent, ValidationError
from coinflow.common.events import EventEnvelope, KafkaBus, consume_forever
from coinflow.common.logging import logger
from coinflow.common.metrics import (
    dlq_published_total,
    duplicate_events_skipped_total,
    retries_total,
    settlement_events_total,
)
from coinflow.common.outbox import enqueue_event, publish_outbox_forever
from coinflow.services.settlement.models import SettlementEvent
from coinflow.services.wallet.ledger import WalletLedger

PROVIDER_EVENTS_TOPIC = "payments.provider.events"
POISON_TOPIC = "settlements.poison"


@dataclass(frozen=True)
class ProviderPayment:
    external_id: str
    provider: str
    account_id: str
    amount_cents: int
    currency: str
    status: str

    def coins(self, cents_per_coin: int) -> int:
        return self.amount_cents // cents_per_coin


def parse_provider_payload(payload: dict) -> ProviderPayment:
    """Schema and semantic validation for provider payment events."""

    external_id = payload.get("external_id")
    provider = payload.get("provider")
    account_id = payload.get("account_id")
    amount_cents = payload.get("amount_cents")
    currency = payload.get("currency")
    status = payload.get("status")

    if not isinstance(external_id, str) or not external_id:
        raise ValidationError("invalid external_id")
    if not isinstance(provider, str) or provider.lower() not in settings.allowed_providers:
        raise ValidationError(f"unknown provider {provider!r}")
    if not isinstance(account_id, str) or not account_id:
        raise ValidationError("invalid account_id")
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise ValidationError("invalid amount_cents")
    if amount_cents % settings.cents_per_coin:
        raise ValidationError(f"amount_cents {amount_cents} is not a whole number of coins")
    if not isinstance(currency, str) or currency.upper() != settings.settlement_currency:
        raise ValidationError(f"unsupported currency {currency!r}")
    if not isinstance(status, str) or not status:
        raise ValidationError("invalid status")
    return ProviderPayment(
        external_id=external_id,
        provider=provider.lower(),
        account_id=account_id,
        amount_cents=amount_cents,
        currency=currency.upper(),
        status=status.lower(),
    )


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, CoinflowError):
        return exc.retryable
    return isinstance(exc, DBAPIError) and not isinstance(exc, IntegrityError)


class SettlementService:
    """Consumes provider events and credits the ledger exactly once per payment."""

    def __init__(self, session_factory, service_name: str = "settlement", sleep=asyncio.sleep) -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.kafka = KafkaBus()
        self.ledger = WalletLedger(session_factory, service_name=service_name)
        self.sleep = sleep

    async def handle_provider_event(self, event: EventEnvelope) -> SettlementEvent | None:
        """Validate, dedupe and credit one provider event, retrying transient failures."""

        try:
            payment = parse_provider_payload(event.payload)
        except ValidationError as exc:
            self._poison(event, str(exc), error_type="NON_RETRYABLE", retryable=False)
            settlement_events_total.labels(service=self.service_name, outcome="invalid").inc()
            logger.warning("non-retryable settlement event dropped event_id=%s reason=%s", event.event_id, exc)
            return None

        if payment.status != "succeeded":
            row = self._record_failed_payment(payment, event.payload)
            settlement_events_total.labels(service=self.service_name, outcome="provider_failed").inc()
            return row

        max_attempts = settings.settlement_max_attempts
        last_error = "UNKNOWN"
        for attempt in range(1, max_attempts + 1):
            try:
                row = self.apply(payment, event.payload)
            except DuplicateEvent:
                logger.info(
                    "duplicate event skipped topic=%s external_id=%s",
                    PROVIDER_EVENTS_TOPIC,
                    payment.external_id,
                )
                duplicate_events_skipped_total.labels(service=self.service_name, topic=PROVIDER_EVENTS_TOPIC).inc()
                settlement_events_total.labels(service=self.service_name, outcome="duplicate").inc()
                return self.get_event(payment.external_id)
            except ValidationError as exc:
                self._poison(event, str(exc), error_type="NON_RETRYABLE", retryable=False, external_id=payment.external_id)
                settlement_events_total.labels(service=self.service_name, outcome="invalid").inc()
                logger.warning(
                    "non-retryable settlement event dropped external_id=%s reason=%s", payment.external_id, exc
                )
                return self.get_event(payment.external_id)
            except Exception as exc:
                if not _is_retryable(exc):
                    return self._poison_unexpected(event, payment, exc)
                last_error = f"{type(exc).__name__}: {exc}"
                self._record_error(payment.external_id, last_error)
                retries_total.labels(service=self.service_name, dependency="ledger").inc()
                if attempt == max_attempts:
                    break
                backoff_seconds = settings.settlement_backoff_base_seconds * 2 ** (attempt - 1)
                logger.warning(
                    "settlement retry external_id=%s attempt=%s backoff_s=%s error=%s",
                    payment.external_id,
                    attempt,
                    backoff_seconds,
                    exc,
                )
                await self.sleep(backoff_seconds)
            else:
                settlement_events_total.labels(service=self.service_name, outcome="applied").inc()
                return row

        self._poison(
            event,
            last_error,
            error_type="RETRY_EXHAUSTED",
            retryable=True,
            replay_topic=PROVIDER_EVENTS_TOPIC,
            external_id=payment.external_id,
        )
        settlement_events_total.labels(service=self.service_name, outcome="poisoned").inc()
        logger.error("settlement retries exhausted external_id=%s error=%s", payment.external_id, last_error)
        return self.get_event(payment.external_id)

    def apply(self, payment: ProviderPayment, raw_payload: dict) -> SettlementEvent:
        """One attempt: record the event, credit the ledger, mark it applied.

        Raises `DuplicateEvent` when the payment was already applied.
        """

        with self.session_factory() as db:
            row = self._load_or_create(db, payment, raw_payload)
            if row.status == "applied":
                raise DuplicateEvent(f"settlement {payment.external_id} already applied")
            if row.account_id != payment.account_id or row.amount_cents != payment.amount_cents:
                raise ValidationError(f"external_id {payment.external_id} reused with a different payload")
            row.attempts += 1
            db.commit()

        coins = payment.coins(settings.cents_per_coin)
        entry = self.ledger.credit(
            payment.account_id,
            coins,
            "settlement_credit",
            idempotency_key=payment.external_id,
            reference_id=payment.external_id,
            metadata={
                "provider": payment.provider,
                "amount_cents": payment.amount_cents,
                "currency": payment.currency,
            },
        )

        with self.session_factory() as db:
            row = db.get(SettlementEvent, payment.external_id)
            row.status = "applied"
            row.ledger_entry_id = entry.id
            row.last_error = None
            row.needs_review = False
            row.processed_at = utcnow()
            db.commit()
        logger.info(
            "settlement applied external_id=%s account_id=%s coins=%s entry_id=%s",
            payment.external_id,
            payment.account_id,
            coins,
            entry.id,
        )
        return row

    def get_event(self, external_id: str) -> SettlementEvent | None:
        with self.session_factory() as db:
            return db.get(SettlementEvent, external_id)

    def list_poison(self, limit: int = 100) -> list[SettlementEvent]:
        with self.session_factory() as db:
            return (
                db.execute(
                    select(SettlementEvent)
                    .where(SettlementEvent.needs_review.is_(True))
                    .order_by(SettlementEvent.created_at)
                    .limit(limit)
                )
                .scalars()
                .all()
            )

    def replay(self, external_id: str) -> SettlementEvent:
        """Re-run a poisoned event once from its stored payload (ops only)."""

        row = self.get_event(external_id)
        if row is None or not row.needs_review:
            raise ValidationError(f"settlement {external_id} not found in review queue")
        payment = parse_provider_payload(row.raw_payload)
        try:
            return self.apply(payment, row.raw_payload)
        except DuplicateEvent:
            with self.session_factory() as db:
                row = db.get(SettlementEvent, external_id)
                row.needs_review = False
                db.commit()
                return row

    def _load_or_create(self, db, payment: ProviderPayment, raw_payload: dict) -> SettlementEvent:
        row = db.get(SettlementEvent, payment.external_id)
        if row is not None:
            return row
        db.add(
            SettlementEvent(
                external_id=payment.external_id,
                provider=payment.provider,
                account_id=payment.account_id,
                amount_cents=payment.amount_cents,
                currency=payment.currency,
                raw_payload=raw_payload,
                status="pending",
                attempts=0,
                needs_review=False,
                created_at=utcnow(),
            )
        )
        try:
            db.commit()
        except IntegrityError:
            # Another worker recorded it first.
            db.rollback()
        return db.get(SettlementEvent, payment.external_id)

    def _record_failed_payment(self, payment: ProviderPayment, raw_payload: dict) -> SettlementEvent:
        with self.session_factory() as db:
            row = self._load_or_create(db, payment, raw_payload)
            if row.status != "applied":
                row.status = "failed"
                row.last_error = f"provider status {payment.status}"
                row.processed_at = utcnow()
            db.commit()
        logger.info(
            "settlement recorded without credit external_id=%s status=%s", payment.external_id, payment.status
        )
        return row

    def _record_error(self, external_id: str, error: str) -> None:
        try:
            with self.session_factory() as db:
                row = db.get(SettlementEvent, external_id)
                if row is not None and row.status != "applied":
                    row.last_error = error[:500]
                    db.commit()
        except DBAPIError as exc:
            logger.warning("settlement error bookkeeping failed external_id=%s error=%s", external_id, exc)

    def _poison_unexpected(
        self, event: EventEnvelope, payment: ProviderPayment, exc: Exception
    ) -> SettlementEvent | None:
        error = f"{type(exc).__name__}: {exc}"
        logger.exception("unexpected settlement failure external_id=%s error=%s", payment.external_id, error)
        self._poison(
            event,
            error,
            error_type="UNEXPECTED",
            retryable=True,
            replay_topic=PROVIDER_EVENTS_TOPIC,
            external_id=payment.external_id,
        )
        settlement_events_total.labels(service=self.service_name, outcome="poisoned").inc()
        return self.get_event(payment.external_id)

    def _poison(
        self,
        source_event: EventEnvelope,
        reason: str,
        error_type: str,
        retryable: bool,
        replay_topic: str | None = None,
        external_id: str | None = None,
    ) -> None:
        """Publish a poison envelope through the outbox and flag the row for review."""

        payload = {
            "reason": reason,
            "error_type": error_type,
            "retryable": retryable,
            "source": self.service_name,
            "source_event_id": source_event.event_id,
            "external_id": external_id,
            "failed_event": source_event.model_dump(),
        }
        if replay_topic is not None:
            payload["replay_topic"] = replay_topic
        with self.session_factory() as db:
            if external_id is not None:
                row = db.get(SettlementEvent, external_id)
                if row is not None:
                    row.status = "failed"
                    row.needs_review = True
                    row.last_error = reason[:500]
                    row.processed_at = utcnow()
            enqueue_event(
                db,
                topic=POISON_TOPIC,
                aggregate_type="settlement_event",
                aggregate_id=external_id or source_event.aggregate_id,
                payload=payload,
                trace_id=source_event.trace_id,
            )
            db.commit()
        dlq_published_total.labels(service=self.service_name, topic=POISON_TOPIC, error_type=error_type).inc()

    async def outbox_publisher(self) -> None:
        await publish_outbox_forever(self.session_factory, self.kafka, self.service_name)

    async def start_consumers(self) -> None:
        """Start Kafka consumer for provider payment events."""

        await consume_forever(PROVIDER_EVENTS_TOPIC, "settlement-provider-events", self.handle_provider_event)
