"""The serving slot state machine.

    waiting -> serving -> completed
    waiting -> cancelled
    serving -> cancelled
    serving -> waiting        (skip with auto-rollback)

Every operation that touches the serving slot first claims the queue row, so
selection and transition happen as one decision per queue. Each ticket
transition is a conditional update on the expected prior status; losing that
race surfaces as StaleTicket instead of applying twice.
"""
import uuid
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.base import utcnow
from app.core.errors import QueueError, NotFoundError, StaleTicket, NotWaiting
from app.modules.queues.models import Queue, QueueTicket, WAITING, SERVING, COMPLETED, CANCELLED
from app.modules.queues.repository import QueueConfigRepository, QueueTicketRepository
from app.modules.events.outbox import (
    OutboxService, TICKET_CALLED, TICKET_COMPLETED, TICKET_SKIPPED, TICKET_REQUEUED, TICKET_PRIORITY_CHANGED
)

log = logging.getLogger("queue.advance")

@dataclass
class AdvanceResult:
    advanced: bool                       # a ticket newly entered the serving slot
    empty: bool = False                  # nobody was waiting to be called
    serving: QueueTicket | None = None   # whoever holds the slot afterwards
    previous: QueueTicket | None = None  # ticket moved out of the slot by this call

class AdvancementEngine:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.queues = QueueConfigRepository(session)
        self.tickets = QueueTicketRepository(session)
        self.outbox = OutboxService(session)

    @asynccontextmanager
    async def _unit_of_work(self):
        try:
            yield
            await self.session.commit()
        except IntegrityError as e:
            # partial unique index on the serving slot fired
            await self.session.rollback()
            raise StaleTicket("Queue changed while advancing, reload and retry") from e
        except BaseException:
            await self.session.rollback()
            raise

    async def _claim(self, org_id: uuid.UUID, queue_id: uuid.UUID) -> Queue:
        queue = await self.queues.claim(org_id, queue_id)
        if queue is None:
            raise NotFoundError("Queue not found", queue_id=queue_id)
        return queue

    async def _lost_race(self, org_id: uuid.UUID, ticket_id: uuid.UUID, error: type[QueueError], message: str) -> QueueError:
        current = await self.tickets.get(org_id, ticket_id, fresh=True)
        if current is None:
            return NotFoundError("Ticket not found", ticket_id=ticket_id)
        return error(message, ticket_id=ticket_id, status=current.status)

    async def _fill_slot(self, org_id: uuid.UUID, queue: Queue, *, force: bool, exclude_id: uuid.UUID | None = None) -> AdvanceResult:
        occupant = await self.tickets.get_serving(queue.id)
        if occupant is not None and not (queue.auto_advance or force):
            return AdvanceResult(advanced=False, serving=occupant)

        candidate = await self.tickets.next_waiting(queue.id, exclude_id=exclude_id)
        if candidate is None:
            # nobody to hand the slot to: the current service keeps running
            return AdvanceResult(advanced=False, empty=True, serving=occupant)

        previous = None
        if occupant is not None:
            # advancing past an occupied slot finishes the current service first
            previous = await self.tickets.transition(
                org_id, occupant.id, expected=(SERVING,), queue_id=queue.id,
                status=COMPLETED, completed_at=utcnow(),
            )
            if previous is None:
                # only leave() moves a serving ticket without the queue claim
                log.info("Queue %s: ticket %s left the slot before it was completed", queue.id, occupant.id)
            else:
                await self.outbox.ticket_event(TICKET_COMPLETED, previous)
                log.info("Queue %s: #%s completed to make room", queue.id, previous.number)

        while candidate is not None:
            serving = await self.tickets.transition(
                org_id, candidate.id, expected=(WAITING,), queue_id=queue.id,
                status=SERVING, called_at=utcnow(),
            )
            if serving is not None:
                await self.outbox.ticket_event(TICKET_CALLED, serving)
                log.info("Queue %s: now serving #%s (ticket %s)", queue.id, serving.number, serving.id)
                return AdvanceResult(advanced=True, serving=serving, previous=previous)
            # the candidate left after it was read; the claim keeps other
            # advancers out, so reading again gives the current front
            log.info("Queue %s: ticket %s left before it was called", queue.id, candidate.id)
            candidate = await self.tickets.next_waiting(queue.id, exclude_id=exclude_id)
        return AdvanceResult(advanced=False, empty=True, previous=previous)

    # ---- Operations ----

    async def call_next(self, org_id: uuid.UUID, queue_id: uuid.UUID, force_advance: bool = False) -> AdvanceResult:
        async with self._unit_of_work():
            queue = await self._claim(org_id, queue_id)
            result = await self._fill_slot(org_id, queue, force=force_advance)
        if result.empty:
            log.info("Queue %s: call next found nobody waiting", queue_id)
        elif not result.advanced:
            log.debug("Queue %s: slot occupied by #%s, nothing advanced", queue_id, result.serving.number)
        return result

    async def complete_service(self, org_id: uuid.UUID, ticket_id: uuid.UUID, queue_id: uuid.UUID) -> AdvanceResult:
        async with self._unit_of_work():
            queue = await self._claim(org_id, queue_id)
            done = await self.tickets.transition(
                org_id, ticket_id, expected=(SERVING,), queue_id=queue_id,
                status=COMPLETED, completed_at=utcnow(),
            )
            if done is None:
                raise await self._lost_race(org_id, ticket_id, StaleTicket, "Ticket already processed")
            await self.outbox.ticket_event(TICKET_COMPLETED, done)
            log.info("Queue %s: #%s completed", queue_id, done.number)

            # auto-advance commits together with the completion
            if queue.auto_advance:
                follow = await self._fill_slot(org_id, queue, force=True)
                result = AdvanceResult(advanced=follow.advanced, empty=follow.empty, serving=follow.serving, previous=done)
            else:
                result = AdvanceResult(advanced=False, previous=done)
        return result

    async def skip(self, org_id: uuid.UUID, ticket_id: uuid.UUID, queue_id: uuid.UUID) -> AdvanceResult:
        async with self._unit_of_work():
            queue = await self._claim(org_id, queue_id)
            if queue.auto_rollback:
                # back of its own tier, priority kept
                skipped = await self.tickets.transition(
                    org_id, ticket_id, expected=(SERVING,), queue_id=queue_id,
                    status=WAITING, created_at=utcnow(), called_at=None,
                )
                event = TICKET_REQUEUED
            else:
                skipped = await self.tickets.transition(
                    org_id, ticket_id, expected=(SERVING,), queue_id=queue_id, status=CANCELLED,
                )
                event = TICKET_SKIPPED
            if skipped is None:
                raise await self._lost_race(org_id, ticket_id, StaleTicket, "Ticket already processed")
            await self.outbox.ticket_event(event, skipped)
            log.info("Queue %s: #%s skipped (%s)", queue_id, skipped.number, skipped.status)

            # a skipped ticket is not called straight back into the slot
            follow = await self._fill_slot(org_id, queue, force=True, exclude_id=skipped.id)
            result = AdvanceResult(advanced=follow.advanced, empty=follow.empty, serving=follow.serving, previous=skipped)
        return result

    async def set_priority(self, org_id: uuid.UUID, ticket_id: uuid.UUID, value: bool) -> QueueTicket:
        async with self._unit_of_work():
            ticket = await self.tickets.transition(org_id, ticket_id, expected=(WAITING,), is_priority=value)
            if ticket is None:
                raise await self._lost_race(org_id, ticket_id, NotWaiting, "Priority can only change while waiting")
            await self.outbox.ticket_event(TICKET_PRIORITY_CHANGED, ticket)
        log.info("Queue %s: #%s priority set to %s", ticket.queue_id, ticket.number, value)
        return ticket
