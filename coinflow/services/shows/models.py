"""Show database models: ticketed live sessions and their tickets."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from coinflow.common.db import Base, utcnow


class ShowSession(Base):
    """Current state of a show. `status` only moves scheduled -> live -> ended."""

    __tablename__ = "show_sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    creator_id: Mapped[str] = mapped_column(String, index=True)
    title: Mapped[str] = mapped_column(String)
    ticket_price: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, default="scheduled", index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    room_name: Mapped[str] = mapped_column(String)
    scheduled_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    tickets_sold: Mapped[int] = mapped_column(Integer, default=0)
    total_revenue: Mapped[int] = mapped_column(Integer, default=0)
    attendee_count: Mapped[int] = mapped_column(Integer, default=0)
    total_gifts: Mapped[int] = mapped_column(Integer, default=0)
    ended_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Ticket(Base):
    """Room access for one holder. Granted only after the purchase debit commits."""

    __tablename__ = "tickets"
    __table_args__ = (UniqueConstraint("show_id", "holder_id", name="uq_ticket_show_holder"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    show_id: Mapped[str] = mapped_column(ForeignKey("show_sessions.id"), index=True)
    holder_id: Mapped[str] = mapped_column(String, index=True)
    access_granted: Mapped[bool] = mapped_column(Boolean, default=False)
    ledger_entry_id: Mapped[str | None] = mapped_column(String, nullable=True)
    purchased_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    checked_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
