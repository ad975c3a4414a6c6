"""Per-minute billing for metered sessions.

Each tick debits the whole minutes elapsed but not yet billed and advances the
session's counters in the same transaction, so a debit and the minutes it pays
for commit together or not at all. The debit key is derived from the session id
and the next tick sequence; a tick that times out or crashes is retried later
with the same key.

The meter never ends a session. When the payer runs dry it sets
`termination_requested`, emits `billing.session.should_end` and reports
`should_end`; the session lifecycle performs the terminal transition.
"""

import math
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import update

from coinflow.common.config import settings
from coinflow.common.db import as_utc, utcnow
from coinflow.common.errors import InsufficientFunds, ValidationError
from coinflow.common.logging import logger
from coinflow.common.metrics import billing_minutes_total, billing_ticks_total
from coinflow.common.outbox import enqueue_event
from coinflow.services.billing.models import BillableSession
from coinflow.services.wallet.authorizer import Hold, SpendAuthorizer
from coinflow.services.wallet.ledger import StaleVersion

SHOULD_END_TOPIC = "billing.session.should_end"


@dataclass(frozen=True)
class TickResult:
    session_id: str
    minutes_billed: int
    billed_minutes: int = 0
    entry_id: str | None = None
    should_end: bool = False


def session_hold(session: BillableSession) -> Hold:
    return Hold(
        payer_id=session.payer_id,
        minimum_amount=session.rate_per_minute,
        kind=session.debit_kind,
        payee_id=session.payee_id,
        reference_id=session.id,
    )


class BillingMeter:
    """Debits active sessions minute by minute through the spend authorizer."""

    def __init__(
        self,
        session_factory,
        authorizer: SpendAuthorizer,
        service_name: str = "billing",
        clock=utcnow,
        heartbeat_timeout_seconds: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.authorizer = authorizer
        self.ledger = authorizer.ledger
        self.service_name = service_name
        self.clock = clock
        self.heartbeat_timeout_seconds = (
            settings.billing_heartbeat_timeout_seconds
            if heartbeat_timeout_seconds is None
            else heartbeat_timeout_seconds
        )

    def tick(self, session_id: str) -> TickResult:
        """Bill every whole minute elapsed since start that is not yet billed."""

        try:
            result = self.ledger.execute(lambda db: self._tick(db, session_id), name="billing_tick")
        except InsufficientFunds as exc:
            billing_ticks_total.labels(service=self.service_name, outcome="insufficient_funds").inc()
            return self._request_termination(session_id, exc)
        outcome = "billed" if result.billed_minutes else "noop"
        billing_ticks_total.labels(service=self.service_name, outcome=outcome).inc()
        return result

    def bill_final(self, session_id: str) -> TickResult:
        """Bill the trailing partial minute of a finalized session, rounding up.

        Runs at most once per session: the debit key is fixed and the row is
        stamped `final_settled_at` in the same transaction.
        """

        try:
            return self.ledger.execute(lambda db: self._bill_final(db, session_id), name="billing_final")
        except InsufficientFunds as exc:
            return self._abandon_final(session_id, exc)

    def _tick(self, db, session_id: str) -> TickResult:
        session = db.get(BillableSession, session_id)
        if session is None:
            raise ValidationError(f"billable session {session_id} not found")
        if session.status != "active" or session.termination_requested:
            return TickResult(
                session.id,
                session.minutes_billed,
                should_end=session.status == "active",
            )

        now = self.clock()
        heartbeat_deadline = as_utc(session.last_heartbeat_at) + timedelta(seconds=self.heartbeat_timeout_seconds)
        if now > heartbeat_deadline:
            # The reaper finalizes it at the last heartbeat.
            return TickResult(session.id, session.minutes_billed)

        elapsed = (now - as_utc(session.started_at)).total_seconds()
        due = int(elapsed // 60)
        pending = due - session.minutes_billed
        if pending <= 0:
            return TickResult(session.id, session.minutes_billed)

        sequence = session.tick_sequence + 1
        entry = self.authorizer.settle_hold(
            session_hold(session),
            pending * session.rate_per_minute,
            f"{session.id}-{sequence}",
            db=db,
        )
        minutes = -entry.amount // session.rate_per_minute
        previous_sequence = session.tick_sequence
        result = db.execute(
            update(BillableSession)
            .where(
                BillableSession.id == session.id,
                BillableSession.status == "active",
                BillableSession.tick_sequence == previous_sequence,
            )
            .values(minutes_billed=session.minutes_billed + minutes, tick_sequence=sequence)
        )
        if result.rowcount != 1:
            raise StaleVersion(f"session {session.id} advanced past tick {previous_sequence}")
        billing_minutes_total.labels(service=self.service_name, kind=session.kind).inc(minutes)
        logger.info(
            "session billed session_id=%s tick=%s minutes=%s amount=%s entry_id=%s",
            session.id,
            sequence,
            minutes,
            -entry.amount,
            entry.id,
        )
        return TickResult(session.id, session.minutes_billed, billed_minutes=minutes, entry_id=entry.id)

    def _bill_final(self, db, session_id: str) -> TickResult:
        session = db.get(BillableSession, session_id)
        if session is None:
            raise ValidationError(f"billable session {session_id} not found")
        if session.status != "finalized" or session.final_settled_at is not None:
            return TickResult(session.id, session.minutes_billed)

        elapsed = (as_utc(session.ended_at) - as_utc(session.started_at)).total_seconds()
        total = max(0, math.ceil(elapsed / 60))
        pending = total - session.minutes_billed
        minutes = 0
        entry = None
        if pending > 0:
            entry = self.authorizer.settle_hold(
                session_hold(session),
                pending * session.rate_per_minute,
                f"{session.id}-final",
                db=db,
            )
            minutes = -entry.amount // session.rate_per_minute
        result = db.execute(
            update(BillableSession)
            .where(BillableSession.id == session.id, BillableSession.final_settled_at.is_(None))
            .values(minutes_billed=session.minutes_billed + minutes, final_settled_at=self.clock())
        )
        if result.rowcount != 1:
            raise StaleVersion(f"session {session.id} final billing already settled")
        if minutes:
            billing_minutes_total.labels(service=self.service_name, kind=session.kind).inc(minutes)
        logger.info(
            "session final billed session_id=%s minutes=%s total_minutes=%s",
            session.id,
            minutes,
            session.minutes_billed,
        )
        return TickResult(
            session.id,
            session.minutes_billed,
            billed_minutes=minutes,
            entry_id=entry.id if entry is not None else None,
        )

    def _request_termination(self, session_id: str, exc: InsufficientFunds) -> TickResult:
        with self.session_factory() as db:
            result = db.execute(
                update(BillableSession)
                .where(
                    BillableSession.id == session_id,
                    BillableSession.status == "active",
                    BillableSession.termination_requested.is_(False),
                )
                .values(termination_requested=True)
            )
            if result.rowcount == 1:
                enqueue_event(
                    db,
                    topic=SHOULD_END_TOPIC,
                    aggregate_type="billable_session",
                    aggregate_id=session_id,
                    payload={
                        "session_id": session_id,
                        "account_id": exc.account_id,
                        "reason": "insufficient_funds",
                        "requested": exc.requested,
                        "available": exc.available,
                    },
                )
            db.commit()
            session = db.get(BillableSession, session_id)
            minutes = session.minutes_billed if session is not None else 0
        logger.warning(
            "session should end session_id=%s account_id=%s requested=%s available=%s",
            session_id,
            exc.account_id,
            exc.requested,
            exc.available,
        )
        return TickResult(session_id, minutes, should_end=True)

    def _abandon_final(self, session_id: str, exc: InsufficientFunds) -> TickResult:
        """Record the final minutes the payer could not cover and close the books."""

        def operation(db) -> TickResult:
            session = db.get(BillableSession, session_id)
            if session.final_settled_at is not None:
                return TickResult(session.id, session.minutes_billed)
            elapsed = (as_utc(session.ended_at) - as_utc(session.started_at)).total_seconds()
            unbilled = max(0, math.ceil(elapsed / 60) - session.minutes_billed)
            result = db.execute(
                update(BillableSession)
                .where(BillableSession.id == session.id, BillableSession.final_settled_at.is_(None))
                .values(final_settled_at=self.clock(), unbilled_minutes=unbilled)
            )
            if result.rowcount != 1:
                raise StaleVersion(f"session {session.id} final billing already settled")
            return TickResult(session.id, session.minutes_billed)

        result = self.ledger.execute(operation, name="billing_final_unbilled")
        billing_ticks_total.labels(service=self.service_name, outcome="final_unbilled").inc()
        logger.error(
            "final minutes unbilled session_id=%s account_id=%s requested=%s available=%s",
            session_id,
            exc.account_id,
            exc.requested,
            exc.available,
        )
        return result
