"""Domain error taxonomy shared by every service.

Each error carries the HTTP status the service endpoints translate it to, and a
`retryable` flag the workers consult before requeueing.
"""

from datetime import datetime

from fastapi import HTTPException


class CoinflowError(Exception):
    """Base class for all domain errors."""

    status_code = 400
    retryable = False


class ValidationError(CoinflowError):
    """Malformed input; rejected immediately."""

    status_code = 422


class InsufficientFunds(CoinflowError):
    """Debit exceeds the available balance. Never retried automatically."""

    status_code = 402

    def __init__(self, account_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"insufficient funds account_id={account_id} requested={requested} available={available}"
        )
        self.account_id = account_id
        self.requested = requested
        self.available = available


class AccessDenied(CoinflowError):
    """Failed ticket, ownership, or state check."""

    status_code = 403


class Conflict(CoinflowError):
    """Optimistic concurrency retries exhausted; safe to retry at a higher level."""

    status_code = 409
    retryable = True


class DuplicateEvent(CoinflowError):
    """Idempotent short-circuit. Callers treat this as success."""

    status_code = 200


class TransientProviderError(CoinflowError):
    """Network or dependency unavailability, retried with backoff by workers."""

    status_code = 503
    retryable = True


class ReconciliationDrift(CoinflowError):
    """Ledger totals diverge from the provider's record for one window."""

    status_code = 409

    def __init__(
        self,
        account_id: str,
        window_start: datetime,
        window_end: datetime,
        expected: int,
        actual: int,
    ) -> None:
        super().__init__(
            f"reconciliation drift account_id={account_id} window={window_start.isoformat()}/"
            f"{window_end.isoformat()} expected={expected} actual={actual}"
        )
        self.account_id = account_id
        self.window_start = window_start
        self.window_end = window_end
        self.expected = expected
        self.actual = actual

    @property
    def difference(self) -> int:
        return self.expected - self.actual


class InvalidStateTransition(CoinflowError, ValueError):
    """Attempted an out-of-order lifecycle transition."""

    status_code = 409

    def __init__(self, current: str, new: str) -> None:
        super().__init__(f"Invalid transition: {current} -> {new}")
        self.current = current
        self.new = new


def http_error(exc: CoinflowError) -> HTTPException:
    """Map domain errors to HTTP responses at the endpoint seam."""

    return HTTPException(status_code=exc.status_code, detail=str(exc))
