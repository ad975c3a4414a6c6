"""Spend authorizer: instant spends, holds, and payee earnings."""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from coinflow.common.errors import InsufficientFunds, ValidationError
from coinflow.common.events import EventEnvelope
from coinflow.services.wallet.authorizer import EARNINGS_TOPIC, SpendAuthorizer, split_fee
from coinflow.services.wallet.ledger import WalletLedger
from coinflow.services.wallet.service import WalletService


@pytest.fixture
def ledger(session_factory):
    return WalletLedger(session_factory, retry_backoff_seconds=0)


@pytest.fixture
def authorizer(ledger):
    return SpendAuthorizer(ledger, fee_percent=20)


def test_split_fee_rounds_fee_down():
    assert split_fee(100, 20) == (80, 20)
    assert split_fee(99, 20) == (80, 19)
    assert split_fee(4, 20) == (4, 0)
    assert split_fee(30, 0) == (30, 0)


def test_instant_spend_debits_payer(ledger, authorizer):
    ledger.credit("fan-1", 100, "topup", idempotency_key="topup-1")

    result = authorizer.authorize_instant("fan-1", 30, "message_unlock", "msg-1", idempotency_key="unlock-1")

    assert result.amount == 30
    assert result.balance_after == 70
    assert result.kind == "message_unlock"
    assert ledger.get_balance("fan-1") == 70


def test_instant_spend_rejects_metered_kind(authorizer):
    with pytest.raises(ValidationError):
        authorizer.authorize_instant("fan-1", 30, "call_debit", "call-1")


def test_insufficient_funds_propagates_without_side_effects(ledger, authorizer, outbox_events):
    ledger.credit("fan-1", 10, "topup", idempotency_key="topup-1")

    with pytest.raises(InsufficientFunds):
        authorizer.send_gift("fan-1", "creator-1", 25, "show-1", idempotency_key="gift-1")

    assert ledger.get_balance("fan-1") == 10
    assert outbox_events(EARNINGS_TOPIC) == []


def test_gift_enqueues_payee_net_share_once(ledger, authorizer, outbox_events):
    ledger.credit("fan-1", 200, "topup", idempotency_key="topup-1")

    first = authorizer.send_gift("fan-1", "creator-1", 100, "show-1", idempotency_key="gift-1")
    replay = authorizer.send_gift("fan-1", "creator-1", 100, "show-1", idempotency_key="gift-1")

    assert replay.entry_id == first.entry_id
    assert ledger.get_balance("fan-1") == 100
    events = outbox_events(EARNINGS_TOPIC)
    assert len(events) == 1
    payload = events[0]["payload"]
    assert payload["account_id"] == "creator-1"
    assert payload["gross"] == 100
    assert payload["net"] == 80
    assert payload["platform_fee"] == 20
    assert payload["idempotency_key"] == "gift-1:earnings"


def test_earnings_consumer_credits_creator_once(session_factory, outbox_events):
    service = WalletService(session_factory)
    service.ledger.credit("fan-1", 200, "topup", idempotency_key="topup-1")
    service.authorizer.send_gift("fan-1", "creator-1", 50, "show-1", idempotency_key="gift-1")
    envelope = EventEnvelope(**outbox_events(EARNINGS_TOPIC)[0])

    asyncio.run(service.handle_earnings(envelope))
    asyncio.run(service.handle_earnings(envelope))

    assert service.ledger.get_balance("creator-1") == 40
    entries = service.ledger.list_entries("creator-1")
    assert [entry.kind for entry in entries] == ["creator_earnings"]
    assert entries[0].details["gross"] == 50


def test_earnings_consumer_drops_malformed_payload(session_factory):
    service = WalletService(session_factory)
    envelope = EventEnvelope(event_type=EARNINGS_TOPIC, aggregate_id="x", payload={"account_id": "creator-1"})

    assert asyncio.run(service.handle_earnings(envelope)) is None
    assert service.ledger.get_balance("creator-1") == 0


def test_hold_checks_funds_without_debiting(ledger, authorizer):
    ledger.credit("fan-1", 25, "topup", idempotency_key="topup-1")

    hold = authorizer.authorize_hold("fan-1", 20, kind="call_debit", payee_id="creator-1")

    assert hold.available == 25
    assert hold.minimum_amount == 20
    assert ledger.get_balance("fan-1") == 25
    with pytest.raises(InsufficientFunds):
        authorizer.authorize_hold("fan-1", 30)


def test_settle_hold_debits_actual_amount(ledger, authorizer, outbox_events):
    ledger.credit("fan-1", 100, "topup", idempotency_key="topup-1")
    hold = authorizer.authorize_hold("fan-1", 10, kind="ai_session_debit", payee_id="twin-1", reference_id="s-1")

    entry = authorizer.settle_hold(hold, 30, "s-1-1")

    assert entry.amount == -30
    assert entry.kind == "ai_session_debit"
    assert ledger.get_balance("fan-1") == 70
    assert outbox_events(EARNINGS_TOPIC)[0]["payload"]["net"] == 24


def test_two_concurrent_unlocks_on_hundred_coins(concurrent_session_factory):
    ledger = WalletLedger(concurrent_session_factory, retry_backoff_seconds=0)
    authorizer = SpendAuthorizer(ledger)
    ledger.credit("fan-1", 100, "topup", idempotency_key="topup-1")

    def unlock(i: int):
        return authorizer.authorize_instant("fan-1", 30, "message_unlock", f"msg-{i}", idempotency_key=f"unlock-{i}")

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(unlock, range(2)))

    assert sorted(result.balance_after for result in results) == [40, 70]
    assert ledger.get_balance("fan-1") == 40


def test_reversing_a_gift_leaves_payee_earnings_until_reversed(session_factory, outbox_events):
    service = WalletService(session_factory)
    service.ledger.credit("fan-1", 200, "topup", idempotency_key="topup-1")
    gift = service.authorizer.send_gift("fan-1", "creator-1", 50, "show-1", idempotency_key="gift-1")
    asyncio.run(service.handle_earnings(EventEnvelope(**outbox_events(EARNINGS_TOPIC)[0])))

    service.ledger.reverse(gift.entry_id, "refund")

    assert service.ledger.get_balance("fan-1") == 200
    assert service.ledger.get_balance("creator-1") == 40
    earnings = service.ledger.list_entries("creator-1")[0]
    assert earnings.idempotency_key == "gift-1:earnings"
    service.ledger.reverse(earnings.id, "refund")
    assert service.ledger.get_balance("creator-1") == 0
