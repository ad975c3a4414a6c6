"""JSON logging with correlation fields.

Every record carries the service name plus whatever trace, event and account
identifiers are bound in the current context, so one payment or session can be
followed across services.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from coinflow.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
account_id_ctx: ContextVar[str] = ContextVar("account_id", default="")

QUIET_LOGGERS = ("aiokafka", "httpx", "httpcore")


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.event_id = event_id_ctx.get()
        record.account_id = account_id_ctx.get()
        return True


@contextmanager
def bound_account(account_id: str):
    """Tag log records emitted inside the block with `account_id`."""

    token = account_id_ctx.set(account_id)
    try:
        yield
    finally:
        account_id_ctx.reset(token)


def configure_logging(level: str | None = None) -> None:
    """Install the JSON handler on the root logger; safe to call more than once."""

    context_filter = ContextFilter()
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(context_filter)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(event_id)s %(account_id)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("coinflow")
