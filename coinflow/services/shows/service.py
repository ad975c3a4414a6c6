"""Show session state machine.

Shows move scheduled -> live -> ended and nothing else. Transition writes are
guarded by `(id, status, state_version)` so a stale writer cannot overwrite a
newer state. Room access requires a ticket whose purchase debit has committed.
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from coinflow.common.config import settings
from coinflow.common.db import utcnow
from coinflow.common.errors import AccessDenied, Conflict, ValidationError
from coinflow.common.events import KafkaBus
from coinflow.common.logging import logger
from coinflow.common.metrics import live_shows, show_transitions_total
from coinflow.common.outbox import enqueue_event, publish_outbox_forever
from coinflow.common.state_machine import validate_transition
from coinflow.services.shows.models import ShowSession, Ticket
from coinflow.services.wallet.authorizer import AuthorizationResult, SpendAuthorizer
from coinflow.services.wallet.ledger import WalletLedger
from coinflow.services.wallet.models import LedgerEntry

SYSTEM = "system"


class ShowService:
    """Owns show lifecycle, tickets and room access."""

    def __init__(self, session_factory, service_name: str = "shows", clock=utcnow) -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.clock = clock
        self.kafka = KafkaBus()
        self.ledger = WalletLedger(session_factory, service_name=service_name)
        self.authorizer = SpendAuthorizer(self.ledger)

    def create_show(self, creator_id: str, title: str, ticket_price: int, scheduled_start=None) -> ShowSession:
        if not creator_id:
            raise ValidationError("creator_id is required")
        if isinstance(ticket_price, bool) or not isinstance(ticket_price, int) or ticket_price < 0:
            raise ValidationError("ticket_price must be a non-negative whole number of coins")
        show_id = str(uuid4())
        now = self.clock()
        with self.session_factory() as db:
            show = ShowSession(
                id=show_id,
                creator_id=creator_id,
                title=title,
                ticket_price=ticket_price,
                status="scheduled",
                state_version=0,
                room_name=f"show-{show_id}",
                scheduled_start=scheduled_start,
                tickets_sold=0,
                total_revenue=0,
                attendee_count=0,
                total_gifts=0,
                created_at=now,
                updated_at=now,
            )
            db.add(show)
            db.commit()
        logger.info("show created show_id=%s creator_id=%s price=%s", show_id, creator_id, ticket_price)
        return show

    def get_show(self, show_id: str) -> ShowSession:
        with self.session_factory() as db:
            show = db.get(ShowSession, show_id)
            if show is None:
                raise ValidationError(f"show {show_id} not found")
            return show

    def purchase_ticket(self, show_id: str, user_id: str) -> Ticket:
        """Debit the ticket price and grant access; repeat purchases return the same ticket."""

        show = self.get_show(show_id)
        if show.status not in ("scheduled", "live"):
            raise AccessDenied(f"show {show_id} is {show.status}; tickets are no longer sold")
        if user_id == show.creator_id:
            raise ValidationError("creators do not buy tickets to their own show")

        ticket = self._pending_ticket(show_id, user_id)
        if ticket.access_granted:
            return ticket

        entry_id = None
        if show.ticket_price > 0:
            result: AuthorizationResult = self.authorizer.authorize_instant(
                user_id,
                show.ticket_price,
                "ticket_purchase",
                show_id,
                idempotency_key=f"ticket:{show_id}:{user_id}",
                payee_id=show.creator_id,
                fee_percent=0,
            )
            entry_id = result.entry_id

        with self.session_factory() as db:
            granted = db.execute(
                update(Ticket)
                .where(Ticket.id == ticket.id, Ticket.access_granted.is_(False))
                .values(access_granted=True, ledger_entry_id=entry_id, purchased_at=self.clock())
            )
            if granted.rowcount == 1:
                db.execute(
                    update(ShowSession)
                    .where(ShowSession.id == show_id)
                    .values(
                        tickets_sold=ShowSession.tickets_sold + 1,
                        total_revenue=ShowSession.total_revenue + show.ticket_price,
                    )
                )
            db.commit()
            ticket = db.get(Ticket, ticket.id)
        logger.info("ticket granted show_id=%s holder_id=%s entry_id=%s", show_id, user_id, entry_id)
        return ticket

    def start_show(self, show_id: str, by: str) -> ShowSession:
        """Creator takes the show live. Starting a live show is a no-op."""

        with self.session_factory() as db:
            show = self._load(db, show_id)
            if by != show.creator_id:
                raise AccessDenied(f"only the creator can start show {show_id}")
            if show.status == "live":
                return show
            now = self.clock()
            try:
                self._transition(db, show, "live", started_at=now, last_heartbeat_at=now)
            except Conflict:
                db.rollback()
                current = self._load(db, show_id)
                if current.status == "live":
                    return current
                raise
            self._enqueue_lifecycle(db, show, "shows.started", {"started_at": now.isoformat()})
            db.commit()
        logger.info("show started show_id=%s", show_id)
        return show

    def join_show(self, show_id: str, user_id: str) -> Ticket | None:
        """Admit a ticket holder to a live show and record check-in."""

        with self.session_factory() as db:
            show = self._load(db, show_id)
            if show.status != "live":
                raise AccessDenied(f"show {show_id} is not live")
            if user_id == show.creator_id:
                return None
            ticket = db.execute(
                select(Ticket).where(Ticket.show_id == show_id, Ticket.holder_id == user_id)
            ).scalar_one_or_none()
            if ticket is None or not ticket.access_granted:
                raise AccessDenied(f"{user_id} has no ticket for show {show_id}")
            if ticket.checked_in_at is None:
                ticket.checked_in_at = self.clock()
                db.commit()
            return ticket

    def heartbeat(self, show_id: str) -> bool:
        """Refresh liveness of a live show; ignored in any other state."""

        with self.session_factory() as db:
            result = db.execute(
                update(ShowSession)
                .where(ShowSession.id == show_id, ShowSession.status == "live")
                .values(last_heartbeat_at=self.clock())
            )
            db.commit()
            return result.rowcount == 1

    def send_gift(
        self, show_id: str, sender_id: str, amount: int, idempotency_key: str | None = None
    ) -> AuthorizationResult:
        show = self.get_show(show_id)
        if show.status != "live":
            raise AccessDenied(f"show {show_id} is not live")
        return self.authorizer.send_gift(sender_id, show.creator_id, amount, show_id, idempotency_key)

    def end_show(self, show_id: str, by: str) -> ShowSession:
        """End a live show, by its creator or by `system`. Ending twice is a no-op."""

        with self.session_factory() as db:
            show = self._load(db, show_id)
            if by != SYSTEM and by != show.creator_id:
                raise AccessDenied(f"only the creator can end show {show_id}")
            if show.status == "ended":
                return show
            attendee_count = db.execute(
                select(func.count())
                .select_from(Ticket)
                .where(Ticket.show_id == show_id, Ticket.checked_in_at.is_not(None))
            ).scalar_one()
            gifted = db.execute(
                select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
                    LedgerEntry.kind == "gift_send",
                    LedgerEntry.status == "committed",
                    LedgerEntry.reference_id == show_id,
                )
            ).scalar_one()
            now = self.clock()
            ended_by = SYSTEM if by == SYSTEM else "creator"
            try:
                self._transition(
                    db,
                    show,
                    "ended",
                    ended_at=now,
                    ended_by=ended_by,
                    attendee_count=int(attendee_count),
                    total_gifts=-int(gifted),
                )
            except Conflict:
                db.rollback()
                current = self._load(db, show_id)
                if current.status == "ended":
                    return current
                raise
            self._enqueue_lifecycle(
                db,
                show,
                "shows.ended",
                {
                    "ended_at": now.isoformat(),
                    "ended_by": ended_by,
                    "attendee_count": show.attendee_count,
                    "total_gifts": show.total_gifts,
                    "tickets_sold": show.tickets_sold,
                    "total_revenue": show.total_revenue,
                },
            )
            db.commit()
        logger.info(
            "show ended show_id=%s by=%s attendees=%s gifts=%s",
            show_id,
            ended_by,
            show.attendee_count,
            show.total_gifts,
        )
        return show

    def reap_stale_shows(self) -> list[str]:
        """End live shows whose heartbeat lapsed."""

        cutoff = self.clock() - timedelta(seconds=settings.show_heartbeat_timeout_seconds)
        with self.session_factory() as db:
            live_count = db.execute(
                select(func.count()).select_from(ShowSession).where(ShowSession.status == "live")
            ).scalar_one()
            stale = (
                db.execute(
                    select(ShowSession.id).where(
                        ShowSession.status == "live",
                        ShowSession.last_heartbeat_at < cutoff,
                    )
                )
                .scalars()
                .all()
            )
        live_shows.labels(service=self.service_name).set(float(live_count))
        reaped = []
        for show_id in stale:
            logger.warning("show heartbeat lapsed show_id=%s", show_id)
            try:
                self.end_show(show_id, SYSTEM)
            except Exception as exc:
                logger.exception("show reap failed show_id=%s error=%s", show_id, exc)
                continue
            reaped.append(show_id)
        return reaped

    async def run_reaper(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self.reap_stale_shows)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("show reaper error: %s", exc)
            await asyncio.sleep(settings.show_reaper_interval_seconds)

    async def outbox_publisher(self) -> None:
        await publish_outbox_forever(self.session_factory, self.kafka, self.service_name)

    def _load(self, db, show_id: str) -> ShowSession:
        show = db.get(ShowSession, show_id)
        if show is None:
            raise ValidationError(f"show {show_id} not found")
        return show

    def _pending_ticket(self, show_id: str, user_id: str) -> Ticket:
        with self.session_factory() as db:
            query = select(Ticket).where(Ticket.show_id == show_id, Ticket.holder_id == user_id)
            ticket = db.execute(query).scalar_one_or_none()
            if ticket is not None:
                return ticket
            db.add(Ticket(show_id=show_id, holder_id=user_id, access_granted=False, created_at=self.clock()))
            try:
                db.commit()
            except IntegrityError:
                # Concurrent purchase by the same holder.
                db.rollback()
            return db.execute(query).scalar_one()

    def _transition(self, db, show: ShowSession, new_status: str, **values) -> None:
        """Apply one validated state transition with optimistic concurrency."""

        validate_transition(show.status, new_status)
        from_status = show.status
        current_version = show.state_version
        result = db.execute(
            update(ShowSession)
            .where(
                ShowSession.id == show.id,
                ShowSession.status == from_status,
                ShowSession.state_version == current_version,
            )
            .values(status=new_status, state_version=current_version + 1, updated_at=self.clock(), **values)
        )
        if result.rowcount != 1:
            raise Conflict(f"show {show.id} changed concurrently (expected version {current_version})")
        show.status = new_status
        show.state_version = current_version + 1
        for name, value in values.items():
            setattr(show, name, value)
        show_transitions_total.labels(service=self.service_name, to_state=new_status).inc()

    def _enqueue_lifecycle(self, db, show: ShowSession, topic: str, extra: dict) -> None:
        enqueue_event(
            db,
            topic=topic,
            aggregate_type="show_session",
            aggregate_id=show.id,
            payload={"show_id": show.id, "creator_id": show.creator_id, "room_name": show.room_name, **extra},
        )
