import uuid
import logging
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.base import utcnow
from app.core.errors import (
    QueueError, NotFoundError, AlreadyActive, CapacityExceeded, QueueUnavailable
)
from app.modules.queues.models import QueueTicket, WAITING, CANCELLED, ACTIVE_STATUSES
from app.modules.queues.repository import QueueConfigRepository, QueueTicketRepository
from app.modules.events.outbox import OutboxService, TICKET_JOINED, TICKET_LEFT

log = logging.getLogger("queue.admission")

class AdmissionService:
    """Getting into and out of a queue."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.queues = QueueConfigRepository(session)
        self.tickets = QueueTicketRepository(session)
        self.outbox = OutboxService(session)

    async def join(self, org_id: uuid.UUID, holder_id: uuid.UUID, queue_id: uuid.UUID) -> QueueTicket:
        try:
            # taking the number first locks the queue row until commit, so the
            # checks below cannot interleave with another join on this queue
            number = await self.queues.next_number(org_id, queue_id)
            if number is None:
                raise NotFoundError("Queue not found", queue_id=queue_id)
            queue = await self.queues.get(org_id, queue_id, fresh=True)
            if queue.maintenance_mode:
                raise QueueUnavailable("Queue is temporarily closed for maintenance", queue_id=queue_id)

            existing = await self.tickets.get_active_for_holder(org_id, queue_id, holder_id)
            if existing:
                raise AlreadyActive("You already have an active ticket", ticket_id=existing.id)

            if queue.max_capacity is not None:
                in_line = await self.tickets.count_active(queue_id)
                if in_line >= queue.max_capacity:
                    raise CapacityExceeded(f"Queue is full. Max capacity: {queue.max_capacity}", queue_id=queue_id)

            ticket = await self.tickets.create(
                org_id,
                queue_id=queue_id,
                holder_id=holder_id,
                number=number,
                status=WAITING,
                is_priority=False,
                created_at=utcnow(),
            )
            await self.outbox.ticket_event(TICKET_JOINED, ticket, holder_id=str(holder_id))
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            log.info("Join rejected by store for holder %s on queue %s", holder_id, queue_id)
            raise AlreadyActive("You already have an active ticket", queue_id=queue_id)
        except QueueError as e:
            await self.session.rollback()
            log.info("Join rejected for holder %s on queue %s: %s", holder_id, queue_id, e.code)
            raise

        log.info("Holder %s joined queue %s as #%s (ticket %s)", holder_id, queue_id, ticket.number, ticket.id)
        return ticket

    async def leave(self, org_id: uuid.UUID, ticket_id: uuid.UUID) -> QueueTicket:
        # leaving never advances the queue, even from the serving slot
        ticket = await self.tickets.transition(org_id, ticket_id, expected=ACTIVE_STATUSES, status=CANCELLED)
        if ticket is None:
            await self.session.rollback()
            raise NotFoundError("Ticket not found or already processed", ticket_id=ticket_id)
        await self.outbox.ticket_event(TICKET_LEFT, ticket)
        await self.session.commit()
        log.info("Ticket %s (#%s) left queue %s", ticket.id, ticket.number, ticket.queue_id)
        return ticket
