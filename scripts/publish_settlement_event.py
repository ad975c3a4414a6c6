"""Publish one provider payment event to the settlement topic.

Useful for manual duplicate-delivery and poison-queue testing: pass the same
`--external-id` twice to watch the second delivery get skipped.
"""

import argparse
import asyncio
import json
from datetime import datetime, timezone
from uuid import uuid4

from aiokafka import AIOKafkaProducer


async def publish(bootstrap_servers: str, topic: str, envelope: dict) -> None:
    """Open producer, publish one message, close producer."""

    producer = AIOKafkaProducer(bootstrap_servers=bootstrap_servers)
    await producer.start()
    try:
        await producer.send_and_wait(
            topic,
            json.dumps(envelope).encode("utf-8"),
            key=envelope["aggregate_id"].encode("utf-8"),
        )
    finally:
        await producer.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Publish a provider payment event envelope.")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="payments.provider.events")
    parser.add_argument("--external-id", default=None)
    parser.add_argument("--account-id", required=True)
    parser.add_argument("--amount-cents", type=int, required=True)
    parser.add_argument("--currency", default="USD")
    parser.add_argument("--status", default="succeeded")
    parser.add_argument("--provider", default="stripe")
    args = parser.parse_args()

    external_id = args.external_id or f"stripe_{uuid4().hex}"
    envelope = {
        "event_id": str(uuid4()),
        "event_type": args.topic,
        "aggregate_id": external_id,
        "source": "publish_settlement_event",
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "trace_id": str(uuid4()),
        "payload": {
            "external_id": external_id,
            "account_id": args.account_id,
            "amount_cents": args.amount_cents,
            "currency": args.currency,
            "status": args.status,
            "provider": args.provider,
        },
    }
    asyncio.run(publish(args.bootstrap_servers, args.topic, envelope))
    print(f"Published external_id={external_id} to topic={args.topic}")


if __name__ == "__main__":
    main()
