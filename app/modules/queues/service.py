import uuid
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.errors import NotFoundError
from app.modules.queues.repository import QueueConfigRepository, QueueTicketRepository
from app.modules.queues.models import Queue, QueueTicket
from app.modules.queues.schemas import QueueCreate, QueueUpdate, QueueMetrics
from app.modules.queues.estimator import QueueEstimator
from app.modules.events.outbox import OutboxService, QUEUE_CONFIG_UPDATED

class QueueService:
    """Reads and configuration around the engine."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.queues = QueueConfigRepository(session)
        self.tickets = QueueTicketRepository(session)
        self.estimator = QueueEstimator(session)

    # ---- Configuration ----
    async def create_queue(self, org_id: uuid.UUID, payload: QueueCreate) -> Queue:
        obj = await self.queues.create(org_id, **payload.model_dump())
        await self.session.commit()
        return obj

    async def get_config(self, org_id: uuid.UUID, queue_id: uuid.UUID) -> Queue:
        # always from the store; a stale flag here is an accepted race
        obj = await self.queues.get(org_id, queue_id, fresh=True)
        if not obj:
            raise NotFoundError("Queue not found", queue_id=queue_id)
        return obj

    async def list_queues(self, org_id: uuid.UUID):
        return await self.queues.list(org_id)

    async def update_config(self, org_id: uuid.UUID, queue_id: uuid.UUID, payload: QueueUpdate) -> Queue:
        # max_capacity=None means unlimited; every other null is "leave as is"
        changes = {
            k: v for k, v in payload.model_dump(exclude_unset=True).items()
            if v is not None or k == "max_capacity"
        }
        obj = await self.queues.update_fields(org_id, queue_id, **changes)
        if not obj:
            raise NotFoundError("Queue not found", queue_id=queue_id)
        await OutboxService(self.session).enqueue(org_id, QUEUE_CONFIG_UPDATED, "queue", obj.id, changes)
        await self.session.commit()
        return obj

    # ---- Tickets ----
    async def get_ticket(self, org_id: uuid.UUID, ticket_id: uuid.UUID) -> QueueTicket:
        obj = await self.tickets.get(org_id, ticket_id, fresh=True)
        if not obj:
            raise NotFoundError("Ticket not found", ticket_id=ticket_id)
        return obj

    async def list_active(self, org_id: uuid.UUID, queue_id: uuid.UUID):
        await self.get_config(org_id, queue_id)
        return await self.tickets.list_active(queue_id)

    async def history(self, org_id: uuid.UUID, holder_id: uuid.UUID, limit: int = 50, offset: int = 0):
        return await self.tickets.history_for_holder(org_id, holder_id, limit=limit, offset=offset)

    async def metrics(self, org_id: uuid.UUID, ticket_id: uuid.UUID) -> QueueMetrics:
        ticket = await self.get_ticket(org_id, ticket_id)
        config = await self.get_config(org_id, ticket.queue_id)
        return await self.estimator.estimate(ticket, config)
