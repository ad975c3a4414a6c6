"""Billable session lifecycle: start, heartbeat, end, and the periodic workers."""

import asyncio
from datetime import timedelta
from uuid import uuid4

from sqlalchemy import select, update

from coinflow.common.config import settings
from coinflow.common.db import as_utc, utcnow
from coinflow.common.errors import AccessDenied, ValidationError
from coinflow.common.events import KafkaBus
from coinflow.common.logging import logger
from coinflow.common.metrics import billing_ticks_total, sessions_finalized_total
from coinflow.common.outbox import enqueue_event, publish_outbox_forever
from coinflow.common.state_machine import BILLABLE_SESSION_TRANSITIONS, validate_transition
from coinflow.services.billing.meter import BillingMeter, TickResult
from coinflow.services.billing.models import SESSION_KINDS, BillableSession
from coinflow.services.wallet.authorizer import SpendAuthorizer
from coinflow.services.wallet.ledger import WalletLedger

FINALIZED_TOPIC = "billing.session.finalized"


class BillingService:
    """Owns billable sessions; the meter owns their counters."""

    def __init__(self, session_factory, service_name: str = "billing", clock=utcnow) -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.clock = clock
        self.kafka = KafkaBus()
        self.ledger = WalletLedger(session_factory, service_name=service_name)
        self.authorizer = SpendAuthorizer(self.ledger)
        self.meter = BillingMeter(session_factory, self.authorizer, service_name=service_name, clock=clock)

    def start_session(
        self,
        kind: str,
        payer_id: str,
        payee_id: str,
        rate_per_minute: int,
        session_id: str | None = None,
    ) -> BillableSession:
        """Check the payer can cover the minimum billing unit, then open the session.

        Starting with an id that already exists returns the existing session.
        """

        if kind not in SESSION_KINDS:
            raise ValidationError(f"unknown session kind {kind!r}")
        if isinstance(rate_per_minute, bool) or not isinstance(rate_per_minute, int) or rate_per_minute <= 0:
            raise ValidationError("rate_per_minute must be a positive whole number of coins")
        if payer_id == payee_id:
            raise ValidationError("payer and payee must differ")
        session_id = session_id or str(uuid4())
        with self.session_factory() as db:
            existing = db.get(BillableSession, session_id)
            if existing is not None:
                return existing

        self.authorizer.authorize_hold(
            payer_id,
            rate_per_minute * settings.billing_minimum_minutes,
            kind=SESSION_KINDS[kind],
            payee_id=payee_id,
            reference_id=session_id,
        )
        now = self.clock()
        with self.session_factory() as db:
            session = BillableSession(
                id=session_id,
                kind=kind,
                payer_id=payer_id,
                payee_id=payee_id,
                rate_per_minute=rate_per_minute,
                status="active",
                started_at=now,
                last_heartbeat_at=now,
                minutes_billed=0,
                tick_sequence=0,
                termination_requested=False,
                unbilled_minutes=0,
                created_at=now,
            )
            db.add(session)
            db.commit()
        logger.info(
            "session started session_id=%s kind=%s payer_id=%s payee_id=%s rate=%s",
            session_id,
            kind,
            payer_id,
            payee_id,
            rate_per_minute,
        )
        return session

    def get_session(self, session_id: str) -> BillableSession:
        with self.session_factory() as db:
            session = db.get(BillableSession, session_id)
            if session is None:
                raise ValidationError(f"billable session {session_id} not found")
            return session

    def heartbeat(self, session_id: str) -> bool:
        """Record liveness; returns False once the session is no longer active."""

        with self.session_factory() as db:
            result = db.execute(
                update(BillableSession)
                .where(BillableSession.id == session_id, BillableSession.status == "active")
                .values(last_heartbeat_at=self.clock())
            )
            db.commit()
            return result.rowcount == 1

    def end_session(self, session_id: str, by: str) -> BillableSession:
        """Explicit end by either participant. Safe to call repeatedly."""

        session = self.get_session(session_id)
        if by == session.payer_id:
            reason = "ended_by_payer"
        elif by == session.payee_id:
            reason = "ended_by_payee"
        else:
            raise AccessDenied(f"{by} is not a participant of session {session_id}")
        return self.finalize(session_id, reason)

    def finalize(self, session_id: str, reason: str, ended_at=None) -> BillableSession:
        """Single-writer terminal transition followed by final billing.

        Only the caller whose `active -> finalized` update lands records the end;
        every caller then drives final billing, which settles at most once.
        """

        with self.session_factory() as db:
            session = db.get(BillableSession, session_id)
            if session is None:
                raise ValidationError(f"billable session {session_id} not found")
            if session.status == "active":
                validate_transition(session.status, "finalized", BILLABLE_SESSION_TRANSITIONS)
                end = ended_at or self.clock()
                if as_utc(end) < as_utc(session.started_at):
                    end = as_utc(session.started_at)
                result = db.execute(
                    update(BillableSession)
                    .where(BillableSession.id == session_id, BillableSession.status == "active")
                    .values(status="finalized", ended_at=end, end_reason=reason)
                )
                if result.rowcount == 1:
                    enqueue_event(
                        db,
                        topic=FINALIZED_TOPIC,
                        aggregate_type="billable_session",
                        aggregate_id=session_id,
                        payload={
                            "session_id": session_id,
                            "account_id": session.payer_id,
                            "payee_id": session.payee_id,
                            "reason": reason,
                            "ended_at": as_utc(end).isoformat(),
                        },
                    )
                    db.commit()
                    sessions_finalized_total.labels(service=self.service_name, reason=reason).inc()
                    logger.info("session finalized session_id=%s reason=%s", session_id, reason)
                else:
                    db.rollback()

        self.meter.bill_final(session_id)
        return self.get_session(session_id)

    def active_session_ids(self) -> list[str]:
        with self.session_factory() as db:
            return list(
                db.execute(select(BillableSession.id).where(BillableSession.status == "active")).scalars().all()
            )

    async def tick_session(self, session_id: str) -> TickResult | None:
        """One tick bounded by the tick timeout; a timed-out tick retries next interval."""

        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self.meter.tick, session_id),
                timeout=settings.billing_tick_timeout_seconds,
            )
        except asyncio.TimeoutError:
            billing_ticks_total.labels(service=self.service_name, outcome="timeout").inc()
            logger.warning("billing tick timed out session_id=%s", session_id)
            return None
        except Exception as exc:
            billing_ticks_total.labels(service=self.service_name, outcome="error").inc()
            logger.error("billing tick failed session_id=%s error=%s", session_id, exc)
            return None
        if result.should_end:
            await asyncio.to_thread(self.finalize, session_id, "insufficient_funds")
        return result

    async def tick_active_sessions(self) -> list[TickResult | None]:
        ids = await asyncio.to_thread(self.active_session_ids)
        return await asyncio.gather(*(self.tick_session(session_id) for session_id in ids))

    def reap_stale_sessions(self) -> list[str]:
        """Finalize active sessions whose heartbeat lapsed, ending them at the last heartbeat."""

        cutoff = self.clock() - timedelta(seconds=settings.billing_heartbeat_timeout_seconds)
        with self.session_factory() as db:
            stale = db.execute(
                select(BillableSession.id, BillableSession.last_heartbeat_at).where(
                    BillableSession.status == "active",
                    BillableSession.last_heartbeat_at < cutoff,
                )
            ).all()
        reaped = []
        for session_id, last_heartbeat_at in stale:
            self.finalize(session_id, "heartbeat_timeout", ended_at=as_utc(last_heartbeat_at))
            reaped.append(session_id)
        if reaped:
            logger.warning("stale sessions reaped count=%s", len(reaped))
        return reaped

    async def run_tick_loop(self) -> None:
        """Reap, then tick every active session, once per interval."""

        while True:
            try:
                await asyncio.to_thread(self.reap_stale_sessions)
                await self.tick_active_sessions()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("billing loop error: %s", exc)
            await asyncio.sleep(settings.billing_tick_interval_seconds)

    async def outbox_publisher(self) -> None:
        await publish_outbox_forever(self.session_factory, self.kafka, self.service_name)
