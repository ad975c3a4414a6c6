"""Kafka envelope and the producer/consumer plumbing every service shares.

Messages are keyed by `aggregate_id`, so all events for one account, session or
show land on one partition and are consumed in order. Consumption is
at-least-once; handlers are expected to be idempotent.
"""

import asyncio
import json
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field
from pydantic import ValidationError as EnvelopeError

from coinflow.common.config import settings
from coinflow.common.logging import account_id_ctx, event_id_ctx, logger, trace_id_ctx
from coinflow.common.metrics import event_queue_delay_seconds, events_consumed_total

POLL_TIMEOUT_MS = 500
POLL_MAX_RECORDS = 50
RESTART_DELAY_SECONDS = 2.0


class EventEnvelope(BaseModel):
    """Canonical event shape on every coinflow topic."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    source: str = Field(default_factory=lambda: settings.service_name)
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str = Field(default_factory=lambda: str(uuid4()))
    payload: dict[str, Any]

    def encode(self) -> bytes:
        return json.dumps(self.model_dump()).encode("utf-8")

    @classmethod
    def decode(cls, raw: bytes) -> "EventEnvelope":
        return cls(**json.loads(raw.decode("utf-8")))

    def queue_delay_seconds(self, now: datetime | None = None) -> float:
        occurred_at = datetime.fromisoformat(self.occurred_at.replace("Z", "+00:00"))
        if occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        return max(0.0, (now - occurred_at).total_seconds())


Handler = Callable[[EventEnvelope], Awaitable[Any]]


class KafkaBus:
    """Lazily started producer shared by a service's outbox publisher."""

    def __init__(self) -> None:
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=settings.kafka_bootstrap_servers,
                acks="all",
            )
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        await producer.send_and_wait(topic, event.encode(), key=event.aggregate_id.encode("utf-8"))

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None


async def make_consumer(topic: str, group_id: str) -> AIOKafkaConsumer:
    consumer = AIOKafkaConsumer(
        topic,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=group_id,
        auto_offset_reset="earliest",
        enable_auto_commit=False,
    )
    await consumer.start()
    return consumer


@contextmanager
def correlation(event: EventEnvelope):
    """Bind trace, event and account identifiers to log records for one event."""

    tokens = (
        (trace_id_ctx, trace_id_ctx.set(event.trace_id)),
        (event_id_ctx, event_id_ctx.set(event.event_id)),
        (account_id_ctx, account_id_ctx.set(str(event.payload.get("account_id", "")))),
    )
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


async def handle_message(topic: str, group_id: str, raw: bytes, offset: int, handler: Handler) -> str:
    """Decode and dispatch one message; returns the outcome label it was counted under."""

    try:
        event = EventEnvelope.decode(raw)
    except (TypeError, ValueError, EnvelopeError) as exc:
        logger.error("malformed_event topic=%s group=%s offset=%s error=%s", topic, group_id, offset, exc)
        outcome = "malformed"
    else:
        event_queue_delay_seconds.labels(service=settings.service_name, topic=topic).observe(
            event.queue_delay_seconds()
        )
        with correlation(event):
            logger.info(
                "event_received topic=%s group=%s event_type=%s aggregate_id=%s",
                topic,
                group_id,
                event.event_type,
                event.aggregate_id,
            )
            try:
                await handler(event)
                outcome = "handled"
            except Exception as exc:
                logger.exception("handler_error topic=%s group=%s offset=%s error=%s", topic, group_id, offset, exc)
                outcome = "error"
    events_consumed_total.labels(service=settings.service_name, topic=topic, outcome=outcome).inc()
    return outcome


async def consume_forever(topic: str, group_id: str, handler: Handler) -> None:
    """Consume one topic for the life of the process, restarting the consumer on failure.

    Offsets are committed once per polled batch, after every message in it has
    been dispatched. A crash mid-batch redelivers the batch.
    """

    while True:
        consumer = None
        try:
            consumer = await make_consumer(topic, group_id)
            while True:
                batches = await consumer.getmany(timeout_ms=POLL_TIMEOUT_MS, max_records=POLL_MAX_RECORDS)
                for messages in batches.values():
                    for msg in messages:
                        await handle_message(topic, group_id, msg.value, msg.offset, handler)
                if batches:
                    await consumer.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topic=%s group=%s error=%s", topic, group_id, exc)
            await asyncio.sleep(RESTART_DELAY_SECONDS)
        finally:
            if consumer is not None:
                await consumer.stop()
