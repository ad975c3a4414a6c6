"""Shared fixtures: SQLite-backed session factories and a controllable clock."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("SERVICE_NAME", "coinflow-tests")

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import sessionmaker

from coinflow.common.db import Base
from coinflow.common.outbox import OutboxEvent
import coinflow.services.billing.models  # noqa: F401
import coinflow.services.reconciliation.models  # noqa: F401
import coinflow.services.settlement.models  # noqa: F401
import coinflow.services.shows.models  # noqa: F401
import coinflow.services.wallet.models  # noqa: F401


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


def _engine(path):
    return create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )


@pytest.fixture
def session_factory(tmp_path):
    engine = _engine(tmp_path / "coinflow.db")
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def concurrent_session_factory(tmp_path):
    """Every transaction takes the SQLite write lock up front, so threads queue instead of deadlocking."""

    engine = _engine(tmp_path / "coinflow-concurrent.db")

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def outbox_events(session_factory):
    """Return outbox payloads for one topic."""

    def _events(topic: str) -> list[dict]:
        with session_factory() as db:
            rows = db.execute(
                select(OutboxEvent).where(OutboxEvent.topic == topic).order_by(OutboxEvent.created_at)
            ).scalars()
            return [row.payload for row in rows]

    return _events
