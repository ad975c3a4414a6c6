"""Wallet ledger: idempotency, balance invariants and optimistic concurrency."""

from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import func, select, update

from coinflow.common.errors import Conflict, InsufficientFunds, ValidationError
from coinflow.services.wallet.ledger import WalletLedger
from coinflow.services.wallet.models import LedgerEntry, WalletAccount


def _entries(session_factory, account_id: str) -> list[LedgerEntry]:
    with session_factory() as db:
        return (
            db.execute(select(LedgerEntry).where(LedgerEntry.account_id == account_id).order_by(LedgerEntry.created_at))
            .scalars()
            .all()
        )


def _committed_sum(session_factory, account_id: str) -> int:
    with session_factory() as db:
        return db.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
                LedgerEntry.account_id == account_id, LedgerEntry.status == "committed"
            )
        ).scalar_one()


@pytest.fixture
def ledger(session_factory):
    return WalletLedger(session_factory, max_attempts=3, retry_backoff_seconds=0)


def test_first_credit_creates_account(ledger):
    entry = ledger.credit("fan-1", 50, "topup", idempotency_key="topup-1")

    assert entry.amount == 50
    assert entry.balance_after == 50
    assert ledger.get_balance("fan-1") == 50


def test_unknown_account_reads_zero(ledger):
    assert ledger.get_balance("nobody") == 0


def test_credit_replay_returns_original_entry(ledger, session_factory):
    first = ledger.credit("fan-1", 50, "topup", idempotency_key="topup-1")
    second = ledger.credit("fan-1", 50, "topup", idempotency_key="topup-1")

    assert second.id == first.id
    assert ledger.get_balance("fan-1") == 50
    assert len(_entries(session_factory, "fan-1")) == 1


def test_idempotency_key_cannot_move_between_accounts(ledger):
    ledger.credit("fan-1", 50, "topup", idempotency_key="topup-1")

    with pytest.raises(ValidationError):
        ledger.credit("fan-2", 50, "topup", idempotency_key="topup-1")
    assert ledger.get_balance("fan-2") == 0


@pytest.mark.parametrize("amount", [0, -5, 1.5, True])
def test_rejects_non_positive_or_fractional_amounts(ledger, amount):
    with pytest.raises(ValidationError):
        ledger.credit("fan-1", amount, "topup", idempotency_key="bad")


def test_rejects_unknown_kind(ledger):
    with pytest.raises(ValidationError):
        ledger.credit("fan-1", 10, "cashback", idempotency_key="bad-kind")


def test_debit_beyond_balance_changes_nothing(ledger, session_factory):
    ledger.credit("fan-1", 20, "topup", idempotency_key="topup-1")

    with pytest.raises(InsufficientFunds) as excinfo:
        ledger.debit("fan-1", 30, "message_unlock", "msg-1")

    assert excinfo.value.available == 20
    assert excinfo.value.requested == 30
    assert ledger.get_balance("fan-1") == 20
    assert len(_entries(session_factory, "fan-1")) == 1


def test_debit_from_unknown_account_is_insufficient(ledger):
    with pytest.raises(InsufficientFunds):
        ledger.debit("nobody", 1, "message_unlock", "msg-1")


def test_debit_replay_with_same_key(ledger, session_factory):
    ledger.credit("fan-1", 100, "topup", idempotency_key="topup-1")

    first = ledger.debit("fan-1", 30, "message_unlock", "msg-1", idempotency_key="unlock-1")
    again = ledger.debit("fan-1", 30, "message_unlock", "msg-1", idempotency_key="unlock-1")

    assert again.id == first.id
    assert first.amount == -30
    assert first.balance_after == 70
    assert ledger.get_balance("fan-1") == 70


def test_reverse_restores_balance_once(ledger):
    ledger.credit("fan-1", 50, "topup", idempotency_key="topup-1")
    debit = ledger.debit("fan-1", 20, "gift_send", "show-1", idempotency_key="gift-1")

    reversed_entry = ledger.reverse(debit.id, "creator refund")
    ledger.reverse(debit.id, "creator refund")

    assert reversed_entry.status == "reversed"
    assert ledger.get_balance("fan-1") == 50
    assert ledger.verify_account("fan-1").consistent


def test_reverse_spent_credit_is_insufficient(ledger):
    credit = ledger.credit("fan-1", 50, "topup", idempotency_key="topup-1")
    ledger.debit("fan-1", 40, "message_unlock", "msg-1")

    with pytest.raises(InsufficientFunds):
        ledger.reverse(credit.id, "chargeback")
    assert ledger.get_balance("fan-1") == 10


def test_list_entries_newest_first(ledger):
    ledger.credit("fan-1", 50, "topup", idempotency_key="topup-1")
    ledger.debit("fan-1", 5, "message_unlock", "msg-1")

    kinds = [entry.kind for entry in ledger.list_entries("fan-1")]

    assert kinds == ["message_unlock", "topup"]


def test_verify_account_stamps_reconciled_at(ledger, session_factory):
    ledger.credit("fan-1", 50, "topup", idempotency_key="topup-1")

    check = ledger.verify_account("fan-1")

    assert check.consistent
    assert check.computed_balance == 50
    with session_factory() as db:
        assert db.get(WalletAccount, "fan-1").last_reconciled_at is not None


def test_verify_account_reports_projection_drift(ledger, session_factory):
    ledger.credit("fan-1", 50, "topup", idempotency_key="topup-1")
    with session_factory() as db:
        db.execute(update(WalletAccount).where(WalletAccount.owner_id == "fan-1").values(balance=45))
        db.commit()

    check = ledger.verify_account("fan-1")

    assert not check.consistent
    assert check.cached_balance == 45
    assert check.computed_balance == 50


def _bump_version_between_read_and_write(monkeypatch, session_factory, times: int) -> list[str]:
    """Simulate a concurrent writer landing after the account row is read."""

    original = WalletLedger._load_account
    calls: list[str] = []

    def interfering(db, account_id, create):
        account = original(db, account_id, create)
        calls.append(account_id)
        if len(calls) <= times:
            with session_factory() as other:
                other.execute(
                    update(WalletAccount)
                    .where(WalletAccount.owner_id == account_id)
                    .values(version=WalletAccount.version + 1)
                )
                other.commit()
        return account

    monkeypatch.setattr(WalletLedger, "_load_account", staticmethod(interfering))
    return calls


def test_version_conflict_restarts_the_operation(ledger, session_factory, monkeypatch):
    ledger.credit("fan-1", 100, "topup", idempotency_key="topup-1")
    calls = _bump_version_between_read_and_write(monkeypatch, session_factory, times=1)

    entry = ledger.debit("fan-1", 30, "message_unlock", "msg-1", idempotency_key="unlock-1")

    assert len(calls) == 2
    assert entry.balance_after == 70
    assert ledger.get_balance("fan-1") == 70
    assert len(_entries(session_factory, "fan-1")) == 2


def test_conflict_after_max_attempts_leaves_no_trace(ledger, session_factory, monkeypatch):
    ledger.credit("fan-1", 100, "topup", idempotency_key="topup-1")
    calls = _bump_version_between_read_and_write(monkeypatch, session_factory, times=10)

    with pytest.raises(Conflict):
        ledger.debit("fan-1", 30, "message_unlock", "msg-1", idempotency_key="unlock-1")

    assert len(calls) == 3
    assert ledger.get_balance("fan-1") == 100
    assert len(_entries(session_factory, "fan-1")) == 1


def test_concurrent_mutations_lose_no_updates(concurrent_session_factory):
    ledger = WalletLedger(concurrent_session_factory, max_attempts=5, retry_backoff_seconds=0)
    ledger.credit("fan-1", 100, "topup", idempotency_key="seed")

    def mutate(i: int):
        try:
            if i % 2:
                return ledger.credit("fan-1", 5, "topup", idempotency_key=f"credit-{i}").amount
            return ledger.debit("fan-1", 15, "message_unlock", f"msg-{i}", idempotency_key=f"debit-{i}").amount
        except InsufficientFunds:
            return 0

    with ThreadPoolExecutor(max_workers=8) as pool:
        applied = list(pool.map(mutate, range(24)))

    balance = ledger.get_balance("fan-1")
    assert balance == 100 + sum(applied)
    assert balance >= 0
    assert balance == _committed_sum(concurrent_session_factory, "fan-1")
    assert all(entry.balance_after >= 0 for entry in _entries(concurrent_session_factory, "fan-1"))
