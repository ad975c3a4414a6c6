"""Transactional outbox shared by every service.

Events are written in the same database transaction as the state change that
produced them, then published to Kafka by `publish_outbox_forever`.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import DateTime, String, func, or_, select, update
from sqlalchemy.orm import Mapped, mapped_column

from coinflow.common.db import Base, JSONType, utcnow
from coinflow.common.events import EventEnvelope
from coinflow.common.logging import logger, trace_id_ctx
from coinflow.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


class OutboxEvent(Base):
    """Events waiting to be published to Kafka."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def enqueue_event(
    db,
    topic: str,
    aggregate_type: str,
    aggregate_id: str,
    payload: dict[str, Any],
    trace_id: str | None = None,
) -> EventEnvelope:
    """Add one outbox row to the caller's transaction (no commit)."""

    envelope = EventEnvelope(
        event_type=topic,
        aggregate_id=aggregate_id,
        trace_id=trace_id or trace_id_ctx.get() or str(uuid4()),
        payload=payload,
    )
    db.add(
        OutboxEvent(
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=topic,
            topic=topic,
            payload=envelope.model_dump(),
        )
    )
    return envelope


def claim_outbox_batch(db, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Atomically claim a batch of pending/stale rows for publishing."""

    table = OutboxEvent.__table__
    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        select(table.c.id)
        .where(
            or_(
                table.c.status == "PENDING",
                (table.c.status == "PROCESSING") & (table.c.sent_at.is_not(None)) & (table.c.sent_at < stale_before),
            )
        )
        .order_by(table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .cte("claim_ids")
    )
    rows = db.execute(
        update(table)
        .where(table.c.id.in_(select(claim_ids.c.id)))
        .values(status="PROCESSING", sent_at=now)
        .returning(table.c.id, table.c.topic, table.c.payload)
    ).all()
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def mark_outbox_sent(db, event_id: str) -> None:
    """Mark one claimed outbox row as delivered."""

    table = OutboxEvent.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="SENT", sent_at=datetime.now(timezone.utc))
    )


def requeue_outbox_event(db, event_id: str) -> None:
    """Return a claimed row to `PENDING` so it can be retried."""

    table = OutboxEvent.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="PENDING", sent_at=None)
    )


def update_outbox_backlog_metrics(db, service_name: str) -> None:
    """Update service-level gauges for pending outbox depth and oldest age."""

    table = OutboxEvent.__table__
    now = datetime.now(timezone.utc)
    pending_statuses = ("PENDING", "PROCESSING")
    pending_count = (
        db.execute(select(func.count()).select_from(table).where(table.c.status.in_(pending_statuses))).scalar_one()
    )
    oldest_pending = db.execute(
        select(func.min(table.c.created_at)).where(table.c.status.in_(pending_statuses))
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (now - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


async def publish_outbox_forever(session_factory, kafka, service_name: str, poll_seconds: float = 0.5) -> None:
    """Continuously publish and ack pending outbox events."""

    while True:
        try:
            with session_factory() as db:
                rows = claim_outbox_batch(db, limit=100)
                update_outbox_backlog_metrics(db, service_name)
                db.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("%s outbox claim failed: %s", service_name, exc)
            rows = []
        for row in rows:
            try:
                await kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
                with session_factory() as db:
                    mark_outbox_sent(db, row["id"])
                    update_outbox_backlog_metrics(db, service_name)
                    db.commit()
            except Exception as exc:
                logger.exception("%s outbox publish failed: %s", service_name, exc)
                with session_factory() as db:
                    requeue_outbox_event(db, row["id"])
                    update_outbox_backlog_metrics(db, service_name)
                    db.commit()
        await asyncio.sleep(poll_seconds)
