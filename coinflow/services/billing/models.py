"""Billing database models.

`minutes_billed` and `tick_sequence` are advanced only by the billing meter, in
the same transaction as the debit they account for.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from coinflow.common.db import Base, utcnow

SESSION_KINDS = {"call": "call_debit", "ai_session": "ai_session_debit"}


class BillableSession(Base):
    """A metered call or AI-twin session."""

    __tablename__ = "billable_sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    kind: Mapped[str] = mapped_column(String)
    payer_id: Mapped[str] = mapped_column(String, index=True)
    payee_id: Mapped[str] = mapped_column(String, index=True)
    rate_per_minute: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, default="active", index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_heartbeat_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    minutes_billed: Mapped[int] = mapped_column(Integer, default=0)
    tick_sequence: Mapped[int] = mapped_column(Integer, default=0)
    termination_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    end_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    final_settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    unbilled_minutes: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    @property
    def debit_kind(self) -> str:
        return SESSION_KINDS[self.kind]
