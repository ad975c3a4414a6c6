"""Append-only wallet ledger.

The account row is a cached projection of committed entries. Every mutation
reads the row's `version`, appends the entry, and writes the new balance only if
the version is unchanged. A lost race restarts the whole operation in a fresh
transaction, up to `max_attempts`, before surfacing `Conflict`. No lock spans
more than one account.

`post_credit`/`post_debit` work inside a caller-owned transaction so other
services can commit their own row changes atomically with a ledger entry; wrap
such work in `execute` to get the retry loop.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from coinflow.common.config import settings
from coinflow.common.db import utcnow
from coinflow.common.errors import Conflict, InsufficientFunds, ValidationError
from coinflow.common.logging import logger
from coinflow.common.metrics import insufficient_funds_total, ledger_conflicts_total, ledger_operations_total
from coinflow.common.tracing import get_tracer
from coinflow.services.wallet.models import ENTRY_KINDS, LedgerEntry, WalletAccount

T = TypeVar("T")


class StaleVersion(Exception):
    """The row changed between read and write; the attempt must restart."""


@dataclass(frozen=True)
class BalanceCheck:
    account_id: str
    cached_balance: int
    computed_balance: int

    @property
    def consistent(self) -> bool:
        return self.cached_balance == self.computed_balance


class WalletLedger:
    """Sole writer of `accounts` and `ledger_entries`."""

    def __init__(
        self,
        session_factory,
        service_name: str = "wallet",
        max_attempts: int | None = None,
        retry_backoff_seconds: float | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.max_attempts = max_attempts or settings.ledger_max_attempts
        self.retry_backoff_seconds = (
            settings.ledger_retry_backoff_seconds if retry_backoff_seconds is None else retry_backoff_seconds
        )
        self.tracer = get_tracer("ledger")

    # -- public operations -------------------------------------------------

    def credit(
        self,
        account_id: str,
        amount: int,
        kind: str,
        idempotency_key: str,
        reference_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Append a positive entry; replaying the same key returns the original entry."""

        self.validate_request(account_id, amount, kind)
        if not idempotency_key:
            raise ValidationError("idempotency_key is required for credits")
        return self.execute(
            lambda db: self.post_credit(db, account_id, amount, kind, idempotency_key, reference_id, metadata),
            name="credit",
        )

    def debit(
        self,
        account_id: str,
        amount: int,
        kind: str,
        reference_id: str | None,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Append a negative entry if the balance covers it, else raise `InsufficientFunds`."""

        self.validate_request(account_id, amount, kind)
        # Generated once so every retry attempt reuses it.
        key = idempotency_key or f"{kind}:{uuid4()}"
        return self.execute(
            lambda db: self.post_debit(db, account_id, amount, kind, reference_id, key, metadata),
            name="debit",
        )

    def reverse(self, entry_id: str, reason: str) -> LedgerEntry:
        """Flip a committed entry to `reversed` and undo its balance effect.

        Reversing an already reversed entry is a no-op. Reversing a credit that
        has since been spent raises `InsufficientFunds`.

        Only this one entry is touched. A paid debit's payee share is a separate
        `creator_earnings` entry keyed `{debit key}:earnings`, credited later by
        the earnings consumer; it stays in place until it is reversed itself.
        """

        def operation(db) -> LedgerEntry:
            entry = db.get(LedgerEntry, entry_id)
            if entry is None:
                raise ValidationError(f"ledger entry {entry_id} not found")
            if entry.status == "reversed":
                return entry
            account = db.get(WalletAccount, entry.account_id)
            new_balance = account.balance - entry.amount
            if new_balance < 0:
                raise InsufficientFunds(account.owner_id, entry.amount, account.balance)
            self._bump(db, account, new_balance)
            result = db.execute(
                update(LedgerEntry)
                .where(LedgerEntry.id == entry.id, LedgerEntry.status == "committed")
                .values(status="reversed", reversed_at=utcnow())
            )
            if result.rowcount != 1:
                raise StaleVersion(f"entry {entry.id} changed during reversal")
            logger.info(
                "ledger entry reversed entry_id=%s account_id=%s amount=%s reason=%s",
                entry.id,
                entry.account_id,
                entry.amount,
                reason,
            )
            return entry

        return self.execute(operation, name="reverse")

    def get_balance(self, account_id: str) -> int:
        with self.session_factory() as db:
            account = db.get(WalletAccount, account_id)
            return account.balance if account is not None else 0

    def list_entries(self, account_id: str, limit: int = 50) -> list[LedgerEntry]:
        with self.session_factory() as db:
            return (
                db.execute(
                    select(LedgerEntry)
                    .where(LedgerEntry.account_id == account_id)
                    .order_by(LedgerEntry.created_at.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )

    def verify_account(self, account_id: str) -> BalanceCheck:
        """Compare the cached balance with the sum of committed entries.

        Both values come from one statement so concurrent writers cannot produce a
        false mismatch. A clean result stamps `last_reconciled_at`.
        """

        computed = (
            select(func.coalesce(func.sum(LedgerEntry.amount), 0))
            .where(LedgerEntry.account_id == account_id, LedgerEntry.status == "committed")
            .scalar_subquery()
        )
        with self.session_factory() as db:
            row = db.execute(
                select(WalletAccount.balance, computed.label("computed")).where(WalletAccount.owner_id == account_id)
            ).one_or_none()
            if row is None:
                return BalanceCheck(account_id, 0, 0)
            check = BalanceCheck(account_id, int(row.balance), int(row.computed))
            if not check.consistent:
                logger.error(
                    "balance projection mismatch account_id=%s cached=%s computed=%s",
                    account_id,
                    check.cached_balance,
                    check.computed_balance,
                )
                return check
            db.execute(
                update(WalletAccount)
                .where(WalletAccount.owner_id == account_id)
                .values(last_reconciled_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return check

    # -- transaction composition ------------------------------------------

    def execute(self, operation: Callable[[Any], T], name: str = "transaction") -> T:
        """Run `operation(db)` and commit, restarting on version or uniqueness races."""

        with self.tracer.start_as_current_span(f"ledger.{name}"):
            for attempt in range(1, self.max_attempts + 1):
                with self.session_factory() as db:
                    try:
                        result = operation(db)
                        db.commit()
                    except StaleVersion as exc:
                        db.rollback()
                        ledger_conflicts_total.labels(service=self.service_name).inc()
                        logger.warning(
                            "ledger version conflict op=%s attempt=%s/%s detail=%s",
                            name,
                            attempt,
                            self.max_attempts,
                            exc,
                        )
                    except IntegrityError as exc:
                        # Concurrent insert of the same idempotency key or account row.
                        db.rollback()
                        ledger_conflicts_total.labels(service=self.service_name).inc()
                        logger.warning(
                            "ledger uniqueness race op=%s attempt=%s/%s error=%s",
                            name,
                            attempt,
                            self.max_attempts,
                            exc.orig,
                        )
                    else:
                        ledger_operations_total.labels(
                            service=self.service_name, operation=name, outcome="committed"
                        ).inc()
                        return result
                if attempt < self.max_attempts and self.retry_backoff_seconds > 0:
                    time.sleep(self.retry_backoff_seconds * attempt)

        ledger_operations_total.labels(service=self.service_name, operation=name, outcome="conflict").inc()
        raise Conflict(f"ledger {name} gave up after {self.max_attempts} attempts")

    def post_credit(
        self,
        db,
        account_id: str,
        amount: int,
        kind: str,
        idempotency_key: str,
        reference_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        existing = self.find_by_key(db, idempotency_key)
        if existing is not None:
            return self._replayed(existing, account_id)
        account = self._load_account(db, account_id, create=True)
        return self._append(db, account, amount, kind, idempotency_key, reference_id, metadata)

    def post_debit(
        self,
        db,
        account_id: str,
        amount: int,
        kind: str,
        reference_id: str | None,
        idempotency_key: str,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        existing = self.find_by_key(db, idempotency_key)
        if existing is not None:
            return self._replayed(existing, account_id)
        account = self._load_account(db, account_id, create=False)
        available = account.balance if account is not None else 0
        if account is None or available < amount:
            insufficient_funds_total.labels(service=self.service_name, kind=kind).inc()
            raise InsufficientFunds(account_id, amount, available)
        return self._append(db, account, -amount, kind, idempotency_key, reference_id, metadata)

    # -- internals ----------------------------------------------------------

    @staticmethod
    def validate_request(account_id: str, amount: int, kind: str) -> None:
        if not account_id:
            raise ValidationError("account_id is required")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(f"amount must be a positive whole number of coins, got {amount!r}")
        if kind not in ENTRY_KINDS:
            raise ValidationError(f"unknown ledger entry kind {kind!r}")

    @staticmethod
    def find_by_key(db, idempotency_key: str) -> LedgerEntry | None:
        return db.execute(
            select(LedgerEntry).where(LedgerEntry.idempotency_key == idempotency_key)
        ).scalar_one_or_none()

    def _replayed(self, existing: LedgerEntry, account_id: str) -> LedgerEntry:
        if existing.account_id != account_id:
            raise ValidationError(
                f"idempotency key {existing.idempotency_key} already used for another account"
            )
        logger.info(
            "idempotent replay key=%s entry_id=%s account_id=%s",
            existing.idempotency_key,
            existing.id,
            account_id,
        )
        return existing

    @staticmethod
    def _load_account(db, account_id: str, create: bool) -> WalletAccount | None:
        account = db.get(WalletAccount, account_id)
        if account is None and create:
            now = utcnow()
            account = WalletAccount(owner_id=account_id, balance=0, version=0, created_at=now, updated_at=now)
            db.add(account)
            db.flush()
        return account

    def _append(
        self,
        db,
        account: WalletAccount,
        delta: int,
        kind: str,
        idempotency_key: str,
        reference_id: str | None,
        metadata: dict[str, Any] | None,
    ) -> LedgerEntry:
        new_balance = account.balance + delta
        if new_balance < 0:
            insufficient_funds_total.labels(service=self.service_name, kind=kind).inc()
            raise InsufficientFunds(account.owner_id, -delta, account.balance)
        self._bump(db, account, new_balance)
        entry = LedgerEntry(
            account_id=account.owner_id,
            amount=delta,
            kind=kind,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
            status="committed",
            balance_after=new_balance,
            details=metadata,
            created_at=utcnow(),
        )
        db.add(entry)
        db.flush()
        return entry

    @staticmethod
    def _bump(db, account: WalletAccount, new_balance: int) -> None:
        """Compare-and-set the projection guarded by `(owner_id, version)`."""

        current_version = account.version
        result = db.execute(
            update(WalletAccount)
            .where(WalletAccount.owner_id == account.owner_id, WalletAccount.version == current_version)
            .values(balance=new_balance, version=current_version + 1, updated_at=utcnow())
        )
        if result.rowcount != 1:
            raise StaleVersion(f"account {account.owner_id} expected version {current_version}")
