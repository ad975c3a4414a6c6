"""Reconciliation job: drift correction, single-flight claims, and windows."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import select

from coinflow.common.db import utcnow
from coinflow.common.errors import TransientProviderError
from coinflow.services.reconciliation.models import ReconciliationRun
from coinflow.services.reconciliation.provider_client import PaymentProviderClient
from coinflow.services.reconciliation.service import DRIFT_TOPIC, ReconciliationService, aligned_window
from coinflow.services.wallet.models import LedgerEntry


class ProviderStub:
    """Serves `/reports/settlements` from a dict of account totals."""

    def __init__(self, totals: dict[str, int]) -> None:
        self.totals = totals
        self.status_code = 200
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": "unavailable"})
        account_id = request.url.params["account_id"]
        return httpx.Response(200, json={"total_cents": self.totals.get(account_id, 0)})


@pytest.fixture
def window():
    now = utcnow()
    return now - timedelta(hours=1), now + timedelta(hours=1)


@pytest.fixture
def stub():
    return ProviderStub({})


@pytest.fixture
def reconciler(session_factory, stub, clock):
    client = PaymentProviderClient(base_url="http://provider.test", transport=httpx.MockTransport(stub))
    return ReconciliationService(session_factory, provider=client, clock=clock)


def _adjustments(session_factory, account_id: str) -> list[LedgerEntry]:
    with session_factory() as db:
        return (
            db.execute(
                select(LedgerEntry).where(
                    LedgerEntry.account_id == account_id,
                    LedgerEntry.kind == "reconciliation_adjustment",
                )
            )
            .scalars()
            .all()
        )


def test_aligned_window_is_previous_full_window():
    now = datetime(2026, 3, 1, 12, 34, 56, tzinfo=timezone.utc)

    start, end = aligned_window(now, 60)

    assert start == datetime(2026, 3, 1, 11, 0, tzinfo=timezone.utc)
    assert end == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_provider_client_maps_server_errors_to_transient(stub, window):
    stub.status_code = 503
    client = PaymentProviderClient(base_url="http://provider.test", transport=httpx.MockTransport(stub))

    with pytest.raises(TransientProviderError):
        client.settled_total_cents("fan-1", *window)


def test_matching_totals_record_matched(reconciler, stub, window, session_factory):
    reconciler.ledger.credit("fan-1", 500, "settlement_credit", idempotency_key="stripe_1")
    stub.totals["fan-1"] = 500

    run = reconciler.reconcile_account("fan-1", *window)

    assert run.status == "matched"
    assert (run.expected_coins, run.actual_coins) == (500, 500)
    assert _adjustments(session_factory, "fan-1") == []
    assert stub.requests[0].url.params["currency"] == "USD"


def test_missing_credit_is_adjusted_once(reconciler, stub, window, session_factory, outbox_events):
    reconciler.ledger.credit("fan-1", 300, "settlement_credit", idempotency_key="stripe_1")
    stub.totals["fan-1"] = 500

    first = reconciler.run_window(*window)
    second = reconciler.run_window(*window)

    assert [run.status for run in first] == ["adjusted"]
    assert second == []
    adjustments = _adjustments(session_factory, "fan-1")
    assert len(adjustments) == 1
    assert adjustments[0].amount == 200
    assert adjustments[0].details["expected"] == 500
    assert adjustments[0].details["actual"] == 300
    assert first[0].adjustment_entry_id == adjustments[0].id
    assert reconciler.ledger.get_balance("fan-1") == 500
    drift = outbox_events(DRIFT_TOPIC)
    assert [event["payload"]["difference"] for event in drift] == [200]


def test_excess_credit_is_debited(reconciler, stub, window, session_factory):
    reconciler.ledger.credit("fan-1", 300, "settlement_credit", idempotency_key="stripe_1")
    stub.totals["fan-1"] = 250

    run = reconciler.reconcile_account("fan-1", *window)

    assert run.status == "adjusted"
    assert [entry.amount for entry in _adjustments(session_factory, "fan-1")] == [-50]
    assert reconciler.ledger.get_balance("fan-1") == 250


def test_uncoverable_negative_drift_is_unresolved(reconciler, stub, window, session_factory, outbox_events):
    reconciler.ledger.credit("fan-1", 300, "settlement_credit", idempotency_key="stripe_1")
    reconciler.ledger.debit("fan-1", 250, "message_unlock", "msg-1")
    stub.totals["fan-1"] = 100

    run = reconciler.reconcile_account("fan-1", *window)

    assert run.status == "unresolved"
    assert "insufficient funds" in run.last_error
    assert _adjustments(session_factory, "fan-1") == []
    assert reconciler.ledger.get_balance("fan-1") == 50
    assert outbox_events(DRIFT_TOPIC)[0]["payload"]["outcome"] == "unresolved"
    assert reconciler.reconcile_account("fan-1", *window) is None


def test_tolerance_absorbs_small_drift(reconciler, stub, window, monkeypatch):
    from coinflow.common.config import settings

    monkeypatch.setattr(settings, "reconciliation_tolerance_coins", 5)
    reconciler.ledger.credit("fan-1", 300, "settlement_credit", idempotency_key="stripe_1")
    stub.totals["fan-1"] = 303

    assert reconciler.reconcile_account("fan-1", *window).status == "matched"


def test_failed_provider_call_can_be_reclaimed(reconciler, stub, window):
    reconciler.ledger.credit("fan-1", 300, "settlement_credit", idempotency_key="stripe_1")
    stub.totals["fan-1"] = 300
    stub.status_code = 502

    failed = reconciler.reconcile_account("fan-1", *window)
    stub.status_code = 200
    retried = reconciler.reconcile_account("fan-1", *window)

    assert failed.status == "failed"
    assert retried.status == "matched"
    assert retried.attempts == 2


def test_live_claim_blocks_until_stale(reconciler, stub, window, clock, session_factory):
    stub.totals["fan-1"] = 0
    with session_factory() as db:
        db.add(
            ReconciliationRun(
                account_id="fan-1",
                window_start=window[0],
                window_end=window[1],
                status="claimed",
                attempts=1,
                claimed_at=clock(),
            )
        )
        db.commit()

    assert reconciler.reconcile_account("fan-1", *window) is None
    clock.advance(301)
    taken_over = reconciler.reconcile_account("fan-1", *window)

    assert taken_over.status == "matched"
    assert taken_over.attempts == 2


def test_window_scope_is_accounts_with_settlement_credits(reconciler, window):
    reconciler.ledger.credit("fan-1", 300, "settlement_credit", idempotency_key="stripe_1")
    reconciler.ledger.credit("fan-2", 300, "topup", idempotency_key="topup-1")

    assert reconciler.accounts_in_window(*window) == ["fan-1"]
