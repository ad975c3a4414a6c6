"""Session billing: per-minute ticks, final partial minute, and should-end signaling."""

import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import select

from coinflow.common.errors import AccessDenied, InsufficientFunds, ValidationError
from coinflow.common.outbox import OutboxEvent
from coinflow.services.billing.meter import SHOULD_END_TOPIC
from coinflow.services.billing.models import BillableSession
from coinflow.services.billing.service import FINALIZED_TOPIC, BillingService
from coinflow.services.wallet.authorizer import EARNINGS_TOPIC
from coinflow.services.wallet.models import LedgerEntry


@pytest.fixture
def billing(session_factory, clock):
    return BillingService(session_factory, clock=clock)


def _debits(session_factory, account_id: str) -> list[LedgerEntry]:
    with session_factory() as db:
        return (
            db.execute(
                select(LedgerEntry)
                .where(LedgerEntry.account_id == account_id, LedgerEntry.amount < 0)
                .order_by(LedgerEntry.created_at)
            )
            .scalars()
            .all()
        )


def test_start_requires_one_billable_minute(billing, session_factory):
    billing.ledger.credit("fan-1", 5, "topup", idempotency_key="topup-1")

    with pytest.raises(InsufficientFunds):
        billing.start_session("call", "fan-1", "creator-1", rate_per_minute=10)

    with session_factory() as db:
        assert db.execute(select(BillableSession)).scalars().all() == []


def test_start_rejects_unknown_kind(billing):
    with pytest.raises(ValidationError):
        billing.start_session("video", "fan-1", "creator-1", rate_per_minute=10)


def test_150_second_call_bills_three_minutes_once_despite_retried_end(billing, session_factory, clock, outbox_events):
    billing.ledger.credit("fan-1", 100, "topup", idempotency_key="topup-1")
    session = billing.start_session("call", "fan-1", "creator-1", rate_per_minute=10)

    clock.advance(150)
    for _ in range(3):
        ended = billing.end_session(session.id, by="fan-1")

    debits = _debits(session_factory, "fan-1")
    assert [(entry.amount, entry.idempotency_key) for entry in debits] == [(-30, f"{session.id}-final")]
    assert ended.status == "finalized"
    assert ended.minutes_billed == 3
    assert ended.end_reason == "ended_by_payer"
    assert billing.ledger.get_balance("fan-1") == 70
    assert [event["payload"]["net"] for event in outbox_events(EARNINGS_TOPIC)] == [24]


def test_ticks_bill_whole_minutes_and_end_rounds_up(billing, session_factory, clock):
    billing.ledger.credit("fan-1", 100, "topup", idempotency_key="topup-1")
    session = billing.start_session("ai_session", "fan-1", "twin-1", rate_per_minute=10)

    clock.advance(60)
    billing.heartbeat(session.id)
    first = billing.meter.tick(session.id)
    repeat = billing.meter.tick(session.id)
    clock.advance(30)
    billing.heartbeat(session.id)
    mid_minute = billing.meter.tick(session.id)
    clock.advance(60)
    billing.heartbeat(session.id)
    second = billing.meter.tick(session.id)
    ended = billing.end_session(session.id, by="twin-1")

    assert (first.billed_minutes, repeat.billed_minutes, mid_minute.billed_minutes, second.billed_minutes) == (
        1,
        0,
        0,
        1,
    )
    keys = [entry.idempotency_key for entry in _debits(session_factory, "fan-1")]
    assert keys == [f"{session.id}-1", f"{session.id}-2", f"{session.id}-final"]
    assert ended.minutes_billed == 3
    assert ended.tick_sequence == 2
    assert billing.ledger.get_balance("fan-1") == 70


def test_tick_after_finalize_bills_nothing(billing, session_factory, clock):
    billing.ledger.credit("fan-1", 100, "topup", idempotency_key="topup-1")
    session = billing.start_session("call", "fan-1", "creator-1", rate_per_minute=10)
    clock.advance(90)
    billing.end_session(session.id, by="creator-1")

    clock.advance(120)
    result = billing.meter.tick(session.id)

    assert result.billed_minutes == 0
    assert not result.should_end
    assert len(_debits(session_factory, "fan-1")) == 1


def test_stranger_cannot_end_session(billing, clock):
    billing.ledger.credit("fan-1", 100, "topup", idempotency_key="topup-1")
    session = billing.start_session("call", "fan-1", "creator-1", rate_per_minute=10)

    with pytest.raises(AccessDenied):
        billing.end_session(session.id, by="someone-else")


def test_insufficient_funds_requests_end_then_lifecycle_finalizes(billing, clock, outbox_events):
    billing.ledger.credit("fan-1", 15, "topup", idempotency_key="topup-1")
    session = billing.start_session("call", "fan-1", "creator-1", rate_per_minute=10)

    clock.advance(60)
    billing.heartbeat(session.id)
    assert billing.meter.tick(session.id).billed_minutes == 1
    clock.advance(60)
    billing.heartbeat(session.id)
    dry = billing.meter.tick(session.id)

    assert dry.should_end
    still_open = billing.get_session(session.id)
    assert still_open.status == "active"
    assert still_open.termination_requested
    assert [event["payload"]["session_id"] for event in outbox_events(SHOULD_END_TOPIC)] == [session.id]

    asyncio.run(billing.tick_session(session.id))

    closed = billing.get_session(session.id)
    assert closed.status == "finalized"
    assert closed.end_reason == "insufficient_funds"
    assert closed.minutes_billed == 1
    assert closed.unbilled_minutes == 1
    assert closed.final_settled_at is not None
    assert billing.ledger.get_balance("fan-1") == 5


def test_tick_active_sessions_covers_every_open_session(concurrent_session_factory, clock):
    billing = BillingService(concurrent_session_factory, clock=clock)
    billing.ledger.credit("fan-1", 100, "topup", idempotency_key="topup-1")
    billing.ledger.credit("fan-2", 100, "topup", idempotency_key="topup-2")
    one = billing.start_session("call", "fan-1", "creator-1", rate_per_minute=10)
    two = billing.start_session("call", "fan-2", "creator-1", rate_per_minute=5)

    clock.advance(120)
    billing.heartbeat(one.id)
    billing.heartbeat(two.id)
    results = asyncio.run(billing.tick_active_sessions())

    assert sorted(result.billed_minutes for result in results) == [2, 2]
    assert billing.ledger.get_balance("fan-1") == 80
    assert billing.ledger.get_balance("fan-2") == 90


def test_reaper_ends_at_last_heartbeat(billing, clock):
    billing.ledger.credit("fan-1", 100, "topup", idempotency_key="topup-1")
    session = billing.start_session("call", "fan-1", "creator-1", rate_per_minute=10)
    clock.advance(60)
    billing.heartbeat(session.id)
    billing.meter.tick(session.id)

    clock.advance(200)
    stale_tick = billing.meter.tick(session.id)
    reaped = billing.reap_stale_sessions()

    assert stale_tick.billed_minutes == 0
    assert reaped == [session.id]
    closed = billing.get_session(session.id)
    assert closed.end_reason == "heartbeat_timeout"
    assert closed.minutes_billed == 1
    assert billing.ledger.get_balance("fan-1") == 90


def test_explicit_end_racing_reaper_finalizes_once(concurrent_session_factory, clock):
    billing = BillingService(concurrent_session_factory, clock=clock)
    billing.ledger.credit("fan-1", 100, "topup", idempotency_key="topup-1")
    session = billing.start_session("call", "fan-1", "creator-1", rate_per_minute=10)
    clock.advance(60)
    billing.heartbeat(session.id)
    clock.advance(95)
    barrier = threading.Barrier(2)

    def end():
        barrier.wait()
        billing.end_session(session.id, by="fan-1")

    def reap():
        barrier.wait()
        billing.reap_stale_sessions()

    with ThreadPoolExecutor(max_workers=2) as pool:
        for future in [pool.submit(end), pool.submit(reap)]:
            future.result()

    finals = [entry for entry in _debits(concurrent_session_factory, "fan-1") if entry.idempotency_key.endswith("-final")]
    assert len(finals) == 1
    with concurrent_session_factory() as db:
        finalized = db.execute(select(OutboxEvent).where(OutboxEvent.topic == FINALIZED_TOPIC)).scalars().all()
    assert len(finalized) == 1
    closed = billing.get_session(session.id)
    assert closed.status == "finalized"
    assert closed.end_reason in ("ended_by_payer", "heartbeat_timeout")
    assert billing.ledger.get_balance("fan-1") == 100 + finals[0].amount == 100 - 10 * closed.minutes_billed


def test_timed_out_tick_is_retried_with_the_same_key(billing, session_factory, clock, monkeypatch):
    from coinflow.common.config import settings

    billing.ledger.credit("fan-1", 100, "topup", idempotency_key="topup-1")
    session = billing.start_session("call", "fan-1", "creator-1", rate_per_minute=10)
    clock.advance(60)
    billing.heartbeat(session.id)
    labels = {"service": "billing", "outcome": "timeout"}
    timeouts_before = REGISTRY.get_sample_value("billing_ticks_total", labels) or 0.0

    real_tick = billing.meter.tick

    def stalled_tick(session_id):
        time.sleep(0.5)

    monkeypatch.setattr(settings, "billing_tick_timeout_seconds", 0.05)
    monkeypatch.setattr(billing.meter, "tick", stalled_tick)
    assert asyncio.run(billing.tick_session(session.id)) is None
    assert REGISTRY.get_sample_value("billing_ticks_total", labels) == timeouts_before + 1
    assert _debits(session_factory, "fan-1") == []

    monkeypatch.setattr(billing.meter, "tick", real_tick)
    retried = asyncio.run(billing.tick_session(session.id))

    assert retried.billed_minutes == 1
    assert [entry.idempotency_key for entry in _debits(session_factory, "fan-1")] == [f"{session.id}-1"]
