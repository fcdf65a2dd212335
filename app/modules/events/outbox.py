import uuid
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import TIMESTAMP, text, String, Integer, Text, JSON, select, and_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.base import Base, TimestampedTenantMixin
from app.core.config import settings
from app.platform.ports.event_bus import EventBusPort

log = logging.getLogger("event.outbox")

TOPIC = "queue.events"

# event types emitted by the queue engine
TICKET_JOINED = "QUEUE_TICKET_JOINED"
TICKET_LEFT = "QUEUE_TICKET_LEFT"
TICKET_CALLED = "QUEUE_TICKET_CALLED"
TICKET_COMPLETED = "QUEUE_TICKET_COMPLETED"
TICKET_SKIPPED = "QUEUE_TICKET_SKIPPED"
TICKET_REQUEUED = "QUEUE_TICKET_REQUEUED"
TICKET_PRIORITY_CHANGED = "QUEUE_TICKET_PRIORITY_CHANGED"
QUEUE_CONFIG_UPDATED = "QUEUE_CONFIG_UPDATED"

class EventOutbox(Base, TimestampedTenantMixin):
    event_type: Mapped[str] = mapped_column(String(64))
    subject_type: Mapped[str] = mapped_column(String(32))
    subject_id: Mapped[str] = mapped_column(String(64))
    payload: Mapped[dict] = mapped_column(JSON)

    occurred_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=text("CURRENT_TIMESTAMP"))

    status: Mapped[str] = mapped_column(String(16), default="pending")  # pending | processing | sent
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=text("CURRENT_TIMESTAMP"))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

class OutboxRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def enqueue(self, org_id: uuid.UUID, *, event_type: str, subject_type: str, subject_id: str, payload: dict, occurred_at: datetime | None = None) -> EventOutbox:
        now = datetime.now(timezone.utc)
        obj = EventOutbox(
            org_id=org_id,
            event_type=event_type,
            subject_type=subject_type,
            subject_id=str(subject_id),
            payload=payload,
            occurred_at=occurred_at or now,
            status="pending",
            attempts=0,
            next_attempt_at=now,
        )
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def claim_batch(self, limit: int = 50) -> list[EventOutbox]:
        # SELECT ... FOR UPDATE SKIP LOCKED
        q = (
            select(EventOutbox)
            .where(
                and_(
                    EventOutbox.deleted_at.is_(None),
                    EventOutbox.status == "pending",
                    EventOutbox.next_attempt_at <= datetime.now(timezone.utc),
                )
            )
            .order_by(EventOutbox.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        res = await self.session.execute(q)
        rows = list(res.scalars().all())
        for r in rows:
            r.status = "processing"
        await self.session.flush()
        return rows

    async def mark_sent(self, obj: EventOutbox):
        obj.status = "sent"
        obj.last_error = None
        await self.session.flush()

    async def mark_failed(self, obj: EventOutbox, error: str):
        obj.status = "pending"  # retry
        obj.attempts = (obj.attempts or 0) + 1
        backoff = min(60, 2 ** min(obj.attempts, 6))  # 2,4,8,16,32,60s
        obj.next_attempt_at = datetime.now(timezone.utc) + timedelta(seconds=backoff)
        obj.last_error = error[:2000]
        await self.session.flush()

class OutboxService:
    """Queues change events in the caller's transaction; the caller commits."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.repo = OutboxRepository(session)

    async def enqueue(self, org_id: uuid.UUID, event_type: str, subject_type: str, subject_id: str | uuid.UUID, payload: dict, occurred_at: datetime | None = None) -> EventOutbox | None:
        if not settings.OUTBOX_ENABLED:
            return None
        return await self.repo.enqueue(org_id, event_type=event_type, subject_type=subject_type, subject_id=str(subject_id), payload=payload, occurred_at=occurred_at)

    async def ticket_event(self, event_type: str, ticket, **extra) -> EventOutbox | None:
        payload = {
            "queue_id": str(ticket.queue_id),
            "number": ticket.number,
            "status": ticket.status,
            "is_priority": ticket.is_priority,
        }
        payload.update(extra)
        return await self.enqueue(ticket.org_id, event_type, "queue_ticket", ticket.id, payload)

def _envelope(ev: EventOutbox) -> dict:
    return {
        "org_id": str(ev.org_id),
        "event_type": ev.event_type,
        "subject": {"type": ev.subject_type, "id": ev.subject_id},
        "payload": ev.payload,
        "occurred_at": ev.occurred_at.isoformat(),
        "outbox_id": str(ev.id),
    }

async def relay_once(session: AsyncSession, bus: EventBusPort, limit: int = 50) -> int:
    """Publish one batch of pending events. Returns how many were claimed."""
    repo = OutboxRepository(session)
    batch = await repo.claim_batch(limit=limit)
    for ev in batch:
        try:
            await bus.publish(topic=TOPIC, key=ev.subject_id or "-", value=_envelope(ev))
            await repo.mark_sent(ev)
        except Exception as ex:  # noqa
            log.exception("Publish failed for outbox event %s", ev.id)
            await repo.mark_failed(ev, error=str(ex))
    await session.commit()
    return len(batch)

# ---- Background relay ----

async def run_outbox_relay(session_factory: async_sessionmaker, bus: EventBusPort, poll_interval_seconds: float = 1.0):
    log.info("Outbox relay started with bus=%s", bus.__class__.__name__)
    try:
        while True:
            async with session_factory() as session:
                try:
                    claimed = await relay_once(session, bus)
                except Exception:
                    log.exception("Outbox relay iteration failed")
                    await session.rollback()
                    claimed = 0
            if not claimed:
                await asyncio.sleep(poll_interval_seconds)
            else:
                await asyncio.sleep(0)  # yield
    except asyncio.CancelledError:
        log.info("Outbox relay cancelled; shutting down")
        raise
