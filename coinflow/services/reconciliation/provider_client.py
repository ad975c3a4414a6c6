"""HTTP client for the payment provider's settlement reporting API."""

from datetime import datetime

import httpx

from coinflow.common.config import settings
from coinflow.common.errors import TransientProviderError, ValidationError


class PaymentProviderClient:
    """Reads the provider's authoritative settled totals."""

    def __init__(self, base_url: str | None = None, timeout: float = 5.0, transport=None) -> None:
        self.base_url = (base_url or settings.provider_url).rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def settled_total_cents(self, account_id: str, window_start: datetime, window_end: datetime) -> int:
        """Sum of succeeded payments for `account_id` settled in `[window_start, window_end)`."""

        params = {
            "account_id": account_id,
            "start": window_start.isoformat(),
            "end": window_end.isoformat(),
            "currency": settings.settlement_currency,
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                resp = client.get(f"{self.base_url}/reports/settlements", params=params)
        except httpx.TransportError as exc:
            raise TransientProviderError(f"provider report unavailable: {exc}") from exc
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientProviderError(f"provider report failed (status={resp.status_code})")
        if resp.status_code >= 400:
            raise ValidationError(f"provider report rejected (status={resp.status_code})")
        total = resp.json().get("total_cents")
        if isinstance(total, bool) or not isinstance(total, int) or total < 0:
            raise ValidationError("provider report response malformed")
        return total
