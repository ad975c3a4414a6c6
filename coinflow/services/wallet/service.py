"""Wallet service: owns the ledger and credits payee earnings."""

from coinflow.common.errors import ValidationError
from coinflow.common.events import EventEnvelope, KafkaBus, consume_forever
from coinflow.common.logging import logger
from coinflow.common.outbox import publish_outbox_forever
from coinflow.services.wallet.authorizer import EARNINGS_TOPIC, SpendAuthorizer
from coinflow.services.wallet.ledger import WalletLedger
from coinflow.services.wallet.models import LedgerEntry


class WalletService:
    """Ledger + authorizer wiring plus the earnings consumer."""

    def __init__(self, session_factory, service_name: str = "wallet") -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.kafka = KafkaBus()
        self.ledger = WalletLedger(session_factory, service_name=service_name)
        self.authorizer = SpendAuthorizer(self.ledger)

    def _validate_earnings_payload(self, event: EventEnvelope) -> tuple[str, int, str]:
        payload = event.payload
        account_id = payload.get("account_id")
        net = payload.get("net")
        key = payload.get("idempotency_key")
        if not isinstance(account_id, str) or not account_id:
            raise ValidationError("invalid account_id")
        if isinstance(net, bool) or not isinstance(net, int) or net <= 0:
            raise ValidationError("invalid net amount")
        if not isinstance(key, str) or not key:
            raise ValidationError("invalid idempotency_key")
        return account_id, net, key

    async def handle_earnings(self, event: EventEnvelope) -> LedgerEntry | None:
        """Credit the payee's net share of a paid interaction exactly once."""

        try:
            account_id, net, key = self._validate_earnings_payload(event)
        except ValidationError as exc:
            logger.warning("earnings event dropped event_id=%s reason=%s", event.event_id, exc)
            return None
        entry = self.ledger.credit(
            account_id,
            net,
            "creator_earnings",
            idempotency_key=key,
            reference_id=event.payload.get("reference_id"),
            metadata={
                "source_entry_id": event.payload.get("source_entry_id"),
                "source_kind": event.payload.get("source_kind"),
                "payer_id": event.payload.get("payer_id"),
                "gross": event.payload.get("gross"),
                "platform_fee": event.payload.get("platform_fee"),
            },
        )
        logger.info(
            "creator earnings credited account_id=%s net=%s entry_id=%s",
            account_id,
            net,
            entry.id,
        )
        return entry

    async def outbox_publisher(self) -> None:
        await publish_outbox_forever(self.session_factory, self.kafka, self.service_name)

    async def start_consumers(self) -> None:
        """Start Kafka consumer for payee earnings."""

        await consume_forever(EARNINGS_TOPIC, "wallet-earnings", self.handle_earnings)
