import asyncio
import uuid
import pytest
from sqlalchemy import select, func

from app.core.errors import StaleTicket, NotWaiting, NotFoundError
from app.modules.queues.admission import AdmissionService
from app.modules.queues.advancement import AdvancementEngine, AdvanceResult
from app.modules.queues.models import QueueTicket, WAITING, SERVING, COMPLETED, CANCELLED

ORG = uuid.UUID(int=1)


async def reload(session_factory, ticket_id) -> QueueTicket:
    async with session_factory() as s:
        return await s.get(QueueTicket, ticket_id)

async def serving_count(session_factory, queue_id) -> int:
    async with session_factory() as s:
        q = select(func.count()).select_from(QueueTicket).where(
            QueueTicket.queue_id == queue_id, QueueTicket.status == SERVING
        )
        return (await s.execute(q)).scalar_one()

async def join_many(session_factory, queue_id, n):
    ids = []
    async with session_factory() as s:
        admission = AdmissionService(s)
        for _ in range(n):
            ids.append((await admission.join(ORG, uuid.uuid4(), queue_id)).id)
    return ids


async def test_call_next_serves_front_of_line(session_factory, queue):
    a, b = await join_many(session_factory, queue.id, 2)
    async with session_factory() as s:
        res = await AdvancementEngine(s).call_next(ORG, queue.id)

    assert res.advanced is True
    assert res.empty is False
    assert res.serving.id == a
    assert res.serving.called_at is not None
    assert (await reload(session_factory, b)).status == WAITING


async def test_call_next_on_empty_queue(session, queue):
    res = await AdvancementEngine(session).call_next(ORG, queue.id)
    assert res == AdvanceResult(advanced=False, empty=True)


async def test_call_next_is_noop_while_slot_occupied(session_factory, queue):
    a, b = await join_many(session_factory, queue.id, 2)
    async with session_factory() as s:
        engine = AdvancementEngine(s)
        await engine.call_next(ORG, queue.id)
        res = await engine.call_next(ORG, queue.id)

    assert res.advanced is False
    assert res.empty is False
    assert res.serving.id == a
    assert (await reload(session_factory, b)).status == WAITING


async def test_forced_call_next_finishes_occupant_first(session_factory, queue):
    a, b = await join_many(session_factory, queue.id, 2)
    async with session_factory() as s:
        engine = AdvancementEngine(s)
        await engine.call_next(ORG, queue.id)
        res = await engine.call_next(ORG, queue.id, force_advance=True)

    assert res.advanced is True
    assert res.previous.id == a
    assert res.serving.id == b
    done = await reload(session_factory, a)
    assert done.status == COMPLETED
    assert done.completed_at is not None
    assert await serving_count(session_factory, queue.id) == 1


async def test_auto_advance_with_nobody_waiting_keeps_current_service(session_factory, make_queue):
    q = await make_queue(auto_advance=True)
    (a,) = await join_many(session_factory, q.id, 1)
    async with session_factory() as s:
        engine = AdvancementEngine(s)
        await engine.call_next(ORG, q.id)
        res = await engine.call_next(ORG, q.id)

    assert res.advanced is False
    assert res.empty is True
    assert res.previous is None
    assert res.serving.id == a
    still = await reload(session_factory, a)
    assert still.status == SERVING
    assert still.completed_at is None


async def test_forced_call_next_with_nobody_waiting_keeps_current_service(session_factory, queue):
    (a,) = await join_many(session_factory, queue.id, 1)
    async with session_factory() as s:
        engine = AdvancementEngine(s)
        await engine.call_next(ORG, queue.id)
        res = await engine.call_next(ORG, queue.id, force_advance=True)

    assert res.empty is True
    assert res.serving.id == a
    assert (await reload(session_factory, a)).status == SERVING


async def test_call_next_passes_over_ticket_that_left_after_being_read(session_factory, queue):
    a, b = await join_many(session_factory, queue.id, 2)
    async with session_factory() as s:
        await AdmissionService(s).leave(ORG, a)

    async with session_factory() as s:
        engine = AdvancementEngine(s)
        gone = await engine.tickets.get(ORG, a)
        read_front = engine.tickets.next_waiting
        reads = []

        # first read returns the front as it was before the leave committed
        async def next_waiting(queue_id, *, exclude_id=None):
            reads.append(queue_id)
            if len(reads) == 1:
                return gone
            return await read_front(queue_id, exclude_id=exclude_id)

        engine.tickets.next_waiting = next_waiting
        res = await engine.call_next(ORG, queue.id)

    assert len(reads) == 2
    assert res.advanced is True
    assert res.serving.id == b
    assert (await reload(session_factory, a)).status == CANCELLED


async def test_call_next_reports_empty_when_only_candidate_left(session_factory, queue):
    (a,) = await join_many(session_factory, queue.id, 1)
    async with session_factory() as s:
        await AdmissionService(s).leave(ORG, a)

    async with session_factory() as s:
        engine = AdvancementEngine(s)
        gone = await engine.tickets.get(ORG, a)
        read_front = engine.tickets.next_waiting
        reads = []

        async def next_waiting(queue_id, *, exclude_id=None):
            reads.append(queue_id)
            if len(reads) == 1:
                return gone
            return await read_front(queue_id, exclude_id=exclude_id)

        engine.tickets.next_waiting = next_waiting
        res = await engine.call_next(ORG, queue.id)

    assert res == AdvanceResult(advanced=False, empty=True)
    assert await serving_count(session_factory, queue.id) == 0


async def test_basic_flow(session_factory, queue):
    async with session_factory() as s:
        admission = AdmissionService(s)
        engine = AdvancementEngine(s)
        a = await admission.join(ORG, uuid.uuid4(), queue.id)
        assert a.number == 1

        res = await engine.call_next(ORG, queue.id)
        assert res.serving.id == a.id

        b = await admission.join(ORG, uuid.uuid4(), queue.id)
        assert b.number == 2

        res = await engine.complete_service(ORG, a.id, queue.id)
        assert res.previous.status == COMPLETED
        assert res.advanced is False

    assert await serving_count(session_factory, queue.id) == 0

    async with session_factory() as s:
        res = await AdvancementEngine(s).call_next(ORG, queue.id)
    assert res.serving.id == b.id


async def test_complete_with_auto_advance_serves_next_in_same_call(session_factory, make_queue):
    q = await make_queue(auto_advance=True)
    a, b = await join_many(session_factory, q.id, 2)
    async with session_factory() as s:
        engine = AdvancementEngine(s)
        await engine.call_next(ORG, q.id)
        res = await engine.complete_service(ORG, a, q.id)

    assert res.previous.id == a
    assert res.advanced is True
    assert res.serving.id == b
    assert (await reload(session_factory, b)).status == SERVING


async def test_complete_with_auto_advance_and_nobody_waiting(session_factory, make_queue):
    q = await make_queue(auto_advance=True)
    (a,) = await join_many(session_factory, q.id, 1)
    async with session_factory() as s:
        engine = AdvancementEngine(s)
        await engine.call_next(ORG, q.id)
        res = await engine.complete_service(ORG, a, q.id)

    assert res.advanced is False
    assert res.empty is True
    assert await serving_count(session_factory, q.id) == 0


async def test_complete_rejects_ticket_not_serving(session_factory, queue):
    (a,) = await join_many(session_factory, queue.id, 1)
    async with session_factory() as s:
        with pytest.raises(StaleTicket):
            await AdvancementEngine(s).complete_service(ORG, a, queue.id)
    assert (await reload(session_factory, a)).status == WAITING


async def test_complete_unknown_ticket(session, queue):
    with pytest.raises(NotFoundError):
        await AdvancementEngine(session).complete_service(ORG, uuid.uuid4(), queue.id)


async def test_complete_checks_queue(session_factory, make_queue):
    q1 = await make_queue(name="Desk 1")
    q2 = await make_queue(name="Desk 2")
    (a,) = await join_many(session_factory, q1.id, 1)
    async with session_factory() as s:
        await AdvancementEngine(s).call_next(ORG, q1.id)
    async with session_factory() as s:
        with pytest.raises(StaleTicket):
            await AdvancementEngine(s).complete_service(ORG, a, q2.id)
    assert (await reload(session_factory, a)).status == SERVING


async def test_priority_jump(session_factory, queue):
    a, b = await join_many(session_factory, queue.id, 2)
    async with session_factory() as s:
        engine = AdvancementEngine(s)
        promoted = await engine.set_priority(ORG, b, True)
        assert promoted.is_priority is True
        res = await engine.call_next(ORG, queue.id)

    assert res.serving.id == b
    assert (await reload(session_factory, a)).status == WAITING


async def test_priority_change_keeps_arrival_time(session_factory, queue):
    (a,) = await join_many(session_factory, queue.id, 1)
    before = (await reload(session_factory, a)).created_at
    async with session_factory() as s:
        await AdvancementEngine(s).set_priority(ORG, a, True)
    assert (await reload(session_factory, a)).created_at == before


async def test_set_priority_only_while_waiting(session_factory, queue):
    (a,) = await join_many(session_factory, queue.id, 1)
    async with session_factory() as s:
        await AdvancementEngine(s).call_next(ORG, queue.id)
    async with session_factory() as s:
        with pytest.raises(NotWaiting):
            await AdvancementEngine(s).set_priority(ORG, a, True)
    assert (await reload(session_factory, a)).is_priority is False


async def test_skip_without_rollback_cancels_and_advances(session_factory, queue):
    # auto_advance is off: an explicit skip still moves the line
    a, b = await join_many(session_factory, queue.id, 2)
    async with session_factory() as s:
        engine = AdvancementEngine(s)
        await engine.call_next(ORG, queue.id)
        res = await engine.skip(ORG, a, queue.id)

    assert res.previous.status == CANCELLED
    assert res.serving.id == b
    assert (await reload(session_factory, a)).status == CANCELLED


async def test_skip_with_auto_rollback_requeues_at_back_of_tier(session_factory, make_queue):
    q = await make_queue(auto_rollback=True)
    c, d, e = await join_many(session_factory, q.id, 3)
    async with session_factory() as s:
        engine = AdvancementEngine(s)
        await engine.call_next(ORG, q.id)
    joined_at = (await reload(session_factory, c)).created_at

    async with session_factory() as s:
        res = await AdvancementEngine(s).skip(ORG, c, q.id)

    assert res.previous.id == c
    assert res.serving.id == d
    skipped = await reload(session_factory, c)
    assert skipped.status == WAITING
    assert skipped.created_at > joined_at
    assert skipped.called_at is None
    assert await serving_count(session_factory, q.id) == 1

    # c now waits behind e
    async with session_factory() as s:
        engine = AdvancementEngine(s)
        await engine.complete_service(ORG, d, q.id)
        res = await engine.call_next(ORG, q.id)
    assert res.serving.id == e


async def test_rollback_keeps_priority_tier(session_factory, make_queue):
    q = await make_queue(auto_rollback=True)
    p, n = await join_many(session_factory, q.id, 2)
    async with session_factory() as s:
        engine = AdvancementEngine(s)
        await engine.set_priority(ORG, p, True)
        await engine.call_next(ORG, q.id)
        res = await engine.skip(ORG, p, q.id)
    assert res.serving.id == n

    # back in line as priority: ahead of anyone who joins later
    (late,) = await join_many(session_factory, q.id, 1)
    async with session_factory() as s:
        engine = AdvancementEngine(s)
        await engine.complete_service(ORG, n, q.id)
        res = await engine.call_next(ORG, q.id)
    assert res.serving.id == p
    assert (await reload(session_factory, late)).status == WAITING


async def test_skip_last_ticket_with_rollback_leaves_slot_empty(session_factory, make_queue):
    q = await make_queue(auto_rollback=True)
    (c,) = await join_many(session_factory, q.id, 1)
    async with session_factory() as s:
        engine = AdvancementEngine(s)
        await engine.call_next(ORG, q.id)
        res = await engine.skip(ORG, c, q.id)

    assert res.advanced is False
    assert res.empty is True
    assert (await reload(session_factory, c)).status == WAITING


async def test_skip_requires_serving_ticket(session_factory, queue):
    (a,) = await join_many(session_factory, queue.id, 1)
    async with session_factory() as s:
        with pytest.raises(StaleTicket):
            await AdvancementEngine(s).skip(ORG, a, queue.id)


async def test_unknown_queue(session):
    with pytest.raises(NotFoundError):
        await AdvancementEngine(session).call_next(ORG, uuid.uuid4())


async def test_concurrent_complete_has_one_winner(session_factory, queue):
    (a,) = await join_many(session_factory, queue.id, 1)
    async with session_factory() as s:
        await AdvancementEngine(s).call_next(ORG, queue.id)

    async def complete():
        async with session_factory() as s:
            return await AdvancementEngine(s).complete_service(ORG, a, queue.id)

    results = await asyncio.gather(complete(), complete(), return_exceptions=True)

    assert sum(isinstance(r, AdvanceResult) for r in results) == 1
    assert sum(isinstance(r, StaleTicket) for r in results) == 1
    assert (await reload(session_factory, a)).status == COMPLETED


async def test_concurrent_call_next_serves_one_ticket(session_factory, queue):
    await join_many(session_factory, queue.id, 3)

    async def call():
        async with session_factory() as s:
            return await AdvancementEngine(s).call_next(ORG, queue.id)

    results = await asyncio.gather(call(), call(), call())

    assert sum(r.advanced for r in results) == 1
    assert await serving_count(session_factory, queue.id) == 1


async def test_concurrent_forced_call_next_keeps_single_slot(session_factory, queue):
    await join_many(session_factory, queue.id, 4)

    async def call():
        async with session_factory() as s:
            return await AdvancementEngine(s).call_next(ORG, queue.id, force_advance=True)

    results = await asyncio.gather(call(), call(), call())

    assert all(r.advanced for r in results)
    assert len({r.serving.id for r in results}) == 3
    assert await serving_count(session_factory, queue.id) == 1
