"""Consumer dispatch: correlation context, malformed messages and handler failures."""

import asyncio
from datetime import datetime, timedelta, timezone

from coinflow.common.events import EventEnvelope, handle_message
from coinflow.common.logging import account_id_ctx, event_id_ctx


def test_handler_sees_bound_correlation_ids():
    envelope = EventEnvelope(event_type="wallet.earnings", aggregate_id="e-1", payload={"account_id": "creator-1"})
    seen = []

    async def handler(event):
        seen.append((event.event_id, event_id_ctx.get(), account_id_ctx.get()))

    outcome = asyncio.run(handle_message("wallet.earnings", "g", envelope.encode(), 7, handler))

    assert outcome == "handled"
    assert seen == [(envelope.event_id, envelope.event_id, "creator-1")]
    assert account_id_ctx.get() == ""


def test_malformed_message_never_reaches_handler():
    calls = []

    async def handler(event):
        calls.append(event)

    assert asyncio.run(handle_message("wallet.earnings", "g", b"not json", 1, handler)) == "malformed"
    assert asyncio.run(handle_message("wallet.earnings", "g", b'{"payload": {}}', 2, handler)) == "malformed"
    assert calls == []


def test_handler_exception_is_contained():
    envelope = EventEnvelope(event_type="payments.provider.events", aggregate_id="x", payload={})

    async def handler(event):
        raise RuntimeError("boom")

    assert asyncio.run(handle_message("payments.provider.events", "g", envelope.encode(), 3, handler)) == "error"


def test_queue_delay_is_clamped_at_zero():
    occurred = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    envelope = EventEnvelope(event_type="t", aggregate_id="a", occurred_at=occurred.isoformat(), payload={})

    assert envelope.queue_delay_seconds(occurred + timedelta(seconds=4)) == 4.0
    assert envelope.queue_delay_seconds(occurred - timedelta(seconds=4)) == 0.0
