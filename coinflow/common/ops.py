"""Helpers shared by the API-key gated ops endpoints."""

import hmac

from fastapi import HTTPException

from coinflow.common.config import settings


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject ops calls without the configured `x-api-key` header."""

    if not x_api_key or not hmac.compare_digest(x_api_key.encode("utf-8"), settings.api_key.encode("utf-8")):
        raise HTTPException(status_code=401, detail="invalid API key")
