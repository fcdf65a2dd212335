import uuid
from typing import Sequence
from sqlalchemy import select, and_, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from app.modules.queues.models import (
    Queue, QueueTicket, WAITING, SERVING, ACTIVE_STATUSES, TERMINAL_STATUSES
)
from app.modules.queues import ordering

class QueueConfigRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, org_id: uuid.UUID, **data) -> Queue:
        obj = Queue(org_id=org_id, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, org_id: uuid.UUID, queue_id: uuid.UUID, *, fresh: bool = False) -> Queue | None:
        q = select(Queue).where(
            Queue.id == queue_id,
            Queue.org_id == org_id,
            Queue.deleted_at.is_(None),
        )
        if fresh:
            q = q.execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def list(self, org_id: uuid.UUID) -> Sequence[Queue]:
        q = select(Queue).where(Queue.org_id == org_id, Queue.deleted_at.is_(None)).order_by(Queue.created_at.asc())
        res = await self.session.execute(q)
        return res.scalars().all()

    async def update_fields(self, org_id: uuid.UUID, queue_id: uuid.UUID, **data) -> Queue | None:
        obj = await self.get(org_id, queue_id)
        if not obj:
            return None
        for k, v in data.items():
            setattr(obj, k, v)
        obj.version = obj.version + 1
        await self.session.flush()
        return obj

    async def claim(self, org_id: uuid.UUID, queue_id: uuid.UUID) -> Queue | None:
        """Bump the queue row so the rest of the transaction holds its lock.

        Concurrent claims on the same queue wait for this transaction to end;
        other queues are unaffected. Returns the freshly read configuration,
        or None when the queue does not exist.
        """
        stmt = (
            update(Queue)
            .where(Queue.id == queue_id, Queue.org_id == org_id, Queue.deleted_at.is_(None))
            .values(version=Queue.version + 1)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(stmt)
        if res.rowcount != 1:
            return None
        return await self.get(org_id, queue_id, fresh=True)

    async def next_number(self, org_id: uuid.UUID, queue_id: uuid.UUID) -> int | None:
        # doubles as the per-queue claim for admission
        stmt = (
            update(Queue)
            .where(Queue.id == queue_id, Queue.org_id == org_id, Queue.deleted_at.is_(None))
            .values(last_ticket_number=Queue.last_ticket_number + 1)
            .returning(Queue.last_ticket_number)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(stmt)
        return res.scalar_one_or_none()


class QueueTicketRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, org_id: uuid.UUID, **data) -> QueueTicket:
        obj = QueueTicket(org_id=org_id, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, org_id: uuid.UUID, ticket_id: uuid.UUID, *, fresh: bool = False) -> QueueTicket | None:
        q = select(QueueTicket).where(
            QueueTicket.id == ticket_id,
            QueueTicket.org_id == org_id,
            QueueTicket.deleted_at.is_(None),
        )
        if fresh:
            q = q.execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def get_active_for_holder(self, org_id: uuid.UUID, queue_id: uuid.UUID, holder_id: uuid.UUID) -> QueueTicket | None:
        q = select(QueueTicket).where(
            QueueTicket.org_id == org_id,
            QueueTicket.queue_id == queue_id,
            QueueTicket.holder_id == holder_id,
            QueueTicket.status.in_(ACTIVE_STATUSES),
            QueueTicket.deleted_at.is_(None),
        )
        res = await self.session.execute(q)
        return res.scalars().first()

    async def get_serving(self, queue_id: uuid.UUID) -> QueueTicket | None:
        q = select(QueueTicket).where(
            QueueTicket.queue_id == queue_id,
            QueueTicket.status == SERVING,
            QueueTicket.deleted_at.is_(None),
        ).execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalars().first()

    async def next_waiting(self, queue_id: uuid.UUID, *, exclude_id: uuid.UUID | None = None) -> QueueTicket | None:
        cond = [QueueTicket.queue_id == queue_id, QueueTicket.status == WAITING, QueueTicket.deleted_at.is_(None)]
        if exclude_id is not None:
            cond.append(QueueTicket.id != exclude_id)
        q = select(QueueTicket).where(and_(*cond)).order_by(*ordering.order_by()).limit(1).execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def list_active(self, queue_id: uuid.UUID) -> Sequence[QueueTicket]:
        q = select(QueueTicket).where(
            QueueTicket.queue_id == queue_id,
            QueueTicket.status.in_(ACTIVE_STATUSES),
            QueueTicket.deleted_at.is_(None),
        ).order_by(*ordering.active_order_by()).execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalars().all()

    async def history_for_holder(self, org_id: uuid.UUID, holder_id: uuid.UUID, *, limit: int = 50, offset: int = 0) -> Sequence[QueueTicket]:
        q = select(QueueTicket).where(
            QueueTicket.org_id == org_id,
            QueueTicket.holder_id == holder_id,
            QueueTicket.status.in_(TERMINAL_STATUSES),
            QueueTicket.deleted_at.is_(None),
        ).order_by(QueueTicket.created_at.desc()).limit(limit).offset(offset)
        res = await self.session.execute(q)
        return res.scalars().all()

    # ---- Counts ----

    async def _count(self, *conditions) -> int:
        q = select(func.count()).select_from(QueueTicket).where(
            and_(QueueTicket.deleted_at.is_(None), *conditions)
        )
        res = await self.session.execute(q)
        return int(res.scalar_one())

    async def count_active(self, queue_id: uuid.UUID) -> int:
        return await self._count(QueueTicket.queue_id == queue_id, QueueTicket.status.in_(ACTIVE_STATUSES))

    async def count_waiting(self, queue_id: uuid.UUID) -> int:
        return await self._count(QueueTicket.queue_id == queue_id, QueueTicket.status == WAITING)

    async def count_serving(self, queue_id: uuid.UUID, *, exclude_id: uuid.UUID | None = None) -> int:
        cond = [QueueTicket.queue_id == queue_id, QueueTicket.status == SERVING]
        if exclude_id is not None:
            cond.append(QueueTicket.id != exclude_id)
        return await self._count(*cond)

    async def count_waiting_ahead(self, ticket: QueueTicket) -> int:
        return await self._count(
            QueueTicket.queue_id == ticket.queue_id,
            QueueTicket.status == WAITING,
            QueueTicket.id != ticket.id,
            ordering.ranks_before(ticket),
        )

    # ---- Compare-and-swap ----

    async def transition(self, org_id: uuid.UUID, ticket_id: uuid.UUID, *, expected: tuple[str, ...], queue_id: uuid.UUID | None = None, **values) -> QueueTicket | None:
        """Apply ``values`` only if the ticket is still in one of ``expected``.

        Returns the refreshed ticket, or None when no row matched (the ticket
        is missing, belongs to another queue, or was moved on by someone else).
        """
        cond = [
            QueueTicket.id == ticket_id,
            QueueTicket.org_id == org_id,
            QueueTicket.status.in_(expected),
            QueueTicket.deleted_at.is_(None),
        ]
        if queue_id is not None:
            cond.append(QueueTicket.queue_id == queue_id)
        stmt = (
            update(QueueTicket)
            .where(and_(*cond))
            .values(version=QueueTicket.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(stmt)
        if res.rowcount != 1:
            return None
        return await self.get(org_id, ticket_id, fresh=True)
