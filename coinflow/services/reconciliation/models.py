"""Reconciliation database models."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from coinflow.common.db import Base, utcnow

FINAL_STATUSES = ("matched", "adjusted", "unresolved")


class ReconciliationRun(Base):
    """Claim and outcome for one account over one window.

    The unique key makes the claim single-flight; a row in a final status is
    never re-run.
    """

    __tablename__ = "reconciliation_runs"
    __table_args__ = (
        UniqueConstraint("account_id", "window_start", "window_end", name="uq_reconciliation_account_window"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    account_id: Mapped[str] = mapped_column(String, index=True)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String, default="claimed", index=True)
    expected_coins: Mapped[int | None] = mapped_column(Integer, nullable=True)
    actual_coins: Mapped[int | None] = mapped_column(Integer, nullable=True)
    adjustment_entry_id: Mapped[str | None] = mapped_column(String, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(String, nullable=True)
    claimed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
