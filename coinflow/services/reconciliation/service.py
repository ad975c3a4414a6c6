"""Reconciliation job: audits ledger settlement credits against the provider.

For each account with settlement activity in a closed window, the provider's
settled total (authoritative) is compared with the sum of committed
`settlement_credit` entries. Drift beyond the tolerance is corrected with a
signed `reconciliation_adjustment` entry and alerted.

Runs are single-flight per `(account, window)`: a claim row is committed before
the provider is called, and a claim in a final status is never re-run.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from coinflow.common.config import settings
from coinflow.common.db import as_utc, utcnow
from coinflow.common.errors import CoinflowError, InsufficientFunds, ReconciliationDrift
from coinflow.common.events import KafkaBus
from coinflow.common.logging import bound_account, logger
from coinflow.common.metrics import reconciliation_drift_coins, reconciliation_runs_total
from coinflow.common.outbox import enqueue_event, publish_outbox_forever
from coinflow.services.reconciliation.models import FINAL_STATUSES, ReconciliationRun
from coinflow.services.reconciliation.provider_client import PaymentProviderClient
from coinflow.services.settlement.models import SettlementEvent
from coinflow.services.wallet.ledger import WalletLedger
from coinflow.services.wallet.models import LedgerEntry

DRIFT_TOPIC = "wallet.reconciliation.drift"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def aligned_window(now: datetime, window_minutes: int) -> tuple[datetime, datetime]:
    """The most recent fully elapsed window, aligned to the epoch."""

    size = timedelta(minutes=window_minutes)
    end = EPOCH + ((as_utc(now) - EPOCH) // size) * size
    return end - size, end


def adjustment_key(account_id: str, window_start: datetime, window_end: datetime) -> str:
    return f"recon:{account_id}:{as_utc(window_start).isoformat()}:{as_utc(window_end).isoformat()}"


class ReconciliationService:
    """Claims account windows, compares totals and books corrections."""

    def __init__(
        self,
        session_factory,
        provider: PaymentProviderClient | None = None,
        service_name: str = "reconciliation",
        clock=utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.provider = provider or PaymentProviderClient()
        self.service_name = service_name
        self.clock = clock
        self.kafka = KafkaBus()
        self.ledger = WalletLedger(session_factory, service_name=service_name)

    def accounts_in_window(self, window_start: datetime, window_end: datetime) -> list[str]:
        """Accounts with ledger settlement credits or recorded provider events in the window."""

        with self.session_factory() as db:
            credited = db.execute(
                select(LedgerEntry.account_id)
                .where(
                    LedgerEntry.kind == "settlement_credit",
                    LedgerEntry.created_at >= window_start,
                    LedgerEntry.created_at < window_end,
                )
                .distinct()
            ).scalars().all()
            reported = db.execute(
                select(SettlementEvent.account_id)
                .where(
                    SettlementEvent.account_id.is_not(None),
                    SettlementEvent.created_at >= window_start,
                    SettlementEvent.created_at < window_end,
                )
                .distinct()
            ).scalars().all()
            return sorted(set(credited) | set(reported))

    def run_window(self, window_start: datetime, window_end: datetime) -> list[ReconciliationRun]:
        runs = []
        for account_id in self.accounts_in_window(window_start, window_end):
            with bound_account(account_id):
                run = self.reconcile_account(account_id, window_start, window_end)
            if run is not None:
                runs.append(run)
        logger.info(
            "reconciliation window done window_start=%s window_end=%s runs=%s",
            window_start.isoformat(),
            window_end.isoformat(),
            len(runs),
        )
        return runs

    def reconcile_account(
        self, account_id: str, window_start: datetime, window_end: datetime
    ) -> ReconciliationRun | None:
        """Reconcile one account window. Returns None when another run owns or finished it."""

        run = self.claim(account_id, window_start, window_end)
        if run is None:
            reconciliation_runs_total.labels(service=self.service_name, outcome="skipped").inc()
            return None

        try:
            provider_cents = self.provider.settled_total_cents(account_id, window_start, window_end)
        except CoinflowError as exc:
            reconciliation_runs_total.labels(service=self.service_name, outcome="failed").inc()
            logger.warning("reconciliation provider call failed account_id=%s error=%s", account_id, exc)
            return self._complete(run.id, "failed", last_error=str(exc))

        expected = provider_cents // settings.cents_per_coin
        actual = self._ledger_settled_total(account_id, window_start, window_end)
        difference = expected - actual

        if abs(difference) <= settings.reconciliation_tolerance_coins:
            result = self._complete(run.id, "matched", expected=expected, actual=actual)
        else:
            drift = ReconciliationDrift(account_id, window_start, window_end, expected, actual)
            logger.error("%s", drift)
            reconciliation_drift_coins.labels(service=self.service_name).observe(abs(drift.difference))
            result = self._adjust(run, drift)

        reconciliation_runs_total.labels(service=self.service_name, outcome=result.status).inc()
        check = self.ledger.verify_account(account_id)
        if not check.consistent:
            reconciliation_runs_total.labels(service=self.service_name, outcome="projection_mismatch").inc()
        return result

    def claim(self, account_id: str, window_start: datetime, window_end: datetime) -> ReconciliationRun | None:
        """Insert or take over the claim row; None when it is held or final."""

        now = self.clock()
        with self.session_factory() as db:
            run = db.execute(
                select(ReconciliationRun).where(
                    ReconciliationRun.account_id == account_id,
                    ReconciliationRun.window_start == window_start,
                    ReconciliationRun.window_end == window_end,
                )
            ).scalar_one_or_none()
            if run is None:
                run = ReconciliationRun(
                    account_id=account_id,
                    window_start=window_start,
                    window_end=window_end,
                    status="claimed",
                    attempts=1,
                    claimed_at=now,
                )
                db.add(run)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    return None
                return run

            if run.status in FINAL_STATUSES:
                return None
            stale_before = now - timedelta(seconds=settings.reconciliation_claim_timeout_seconds)
            if run.status == "claimed" and as_utc(run.claimed_at) > stale_before:
                return None
            result = db.execute(
                update(ReconciliationRun)
                .where(
                    ReconciliationRun.id == run.id,
                    ReconciliationRun.status == run.status,
                    ReconciliationRun.attempts == run.attempts,
                )
                .values(status="claimed", claimed_at=now, attempts=run.attempts + 1, last_error=None)
            )
            if result.rowcount != 1:
                db.rollback()
                return None
            db.commit()
            logger.info("reconciliation claim taken over run_id=%s attempts=%s", run.id, run.attempts)
            return run

    def _ledger_settled_total(self, account_id: str, window_start: datetime, window_end: datetime) -> int:
        with self.session_factory() as db:
            return int(
                db.execute(
                    select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
                        LedgerEntry.account_id == account_id,
                        LedgerEntry.kind == "settlement_credit",
                        LedgerEntry.status == "committed",
                        LedgerEntry.created_at >= window_start,
                        LedgerEntry.created_at < window_end,
                    )
                ).scalar_one()
            )

    def _adjust(self, run: ReconciliationRun, drift: ReconciliationDrift) -> ReconciliationRun:
        """Book the signed correction and close the run in one transaction."""

        key = adjustment_key(drift.account_id, drift.window_start, drift.window_end)
        metadata = {
            "window_start": as_utc(drift.window_start).isoformat(),
            "window_end": as_utc(drift.window_end).isoformat(),
            "expected": drift.expected,
            "actual": drift.actual,
            "run_id": run.id,
        }

        def operation(db) -> ReconciliationRun:
            if drift.difference > 0:
                entry = self.ledger.post_credit(
                    db, drift.account_id, drift.difference, "reconciliation_adjustment", key, run.id, metadata
                )
            else:
                entry = self.ledger.post_debit(
                    db, drift.account_id, -drift.difference, "reconciliation_adjustment", run.id, key, metadata
                )
            self._enqueue_drift(db, run, drift, "adjusted")
            return self._finish(
                db, run.id, "adjusted", expected=drift.expected, actual=drift.actual, entry_id=entry.id
            )

        try:
            return self.ledger.execute(operation, name="reconciliation_adjustment")
        except InsufficientFunds as exc:
            logger.error(
                "reconciliation adjustment unresolved account_id=%s difference=%s available=%s",
                drift.account_id,
                drift.difference,
                exc.available,
            )
            with self.session_factory() as db:
                self._enqueue_drift(db, run, drift, "unresolved")
                result = self._finish(
                    db, run.id, "unresolved", expected=drift.expected, actual=drift.actual, last_error=str(exc)
                )
                db.commit()
                return result
        except CoinflowError as exc:
            return self._complete(run.id, "failed", expected=drift.expected, actual=drift.actual, last_error=str(exc))

    def _enqueue_drift(self, db, run: ReconciliationRun, drift: ReconciliationDrift, outcome: str) -> None:
        enqueue_event(
            db,
            topic=DRIFT_TOPIC,
            aggregate_type="reconciliation_run",
            aggregate_id=run.id,
            payload={
                "account_id": drift.account_id,
                "window_start": as_utc(drift.window_start).isoformat(),
                "window_end": as_utc(drift.window_end).isoformat(),
                "expected": drift.expected,
                "actual": drift.actual,
                "difference": drift.difference,
                "outcome": outcome,
            },
        )

    def _complete(self, run_id: str, status: str, **fields) -> ReconciliationRun:
        with self.session_factory() as db:
            result = self._finish(db, run_id, status, **fields)
            db.commit()
            return result

    def _finish(
        self,
        db,
        run_id: str,
        status: str,
        expected: int | None = None,
        actual: int | None = None,
        entry_id: str | None = None,
        last_error: str | None = None,
    ) -> ReconciliationRun:
        run = db.get(ReconciliationRun, run_id)
        run.status = status
        run.expected_coins = expected
        run.actual_coins = actual
        run.adjustment_entry_id = entry_id
        run.last_error = last_error[:500] if last_error else None
        run.completed_at = self.clock()
        db.flush()
        return run

    async def run_forever(self) -> None:
        """Reconcile the previous window once per interval."""

        while True:
            try:
                window_start, window_end = aligned_window(self.clock(), settings.reconciliation_window_minutes)
                await asyncio.to_thread(self.run_window, window_start, window_end)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("reconciliation loop error: %s", exc)
            await asyncio.sleep(settings.reconciliation_interval_seconds)

    async def outbox_publisher(self) -> None:
        await publish_outbox_forever(self.session_factory, self.kafka, self.service_name)
