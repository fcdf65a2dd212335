import uuid
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.db import SessionLocal
from app.core.security import get_principal, require_scopes, Principal
from app.modules.queues.schemas import (
    QueueCreate, QueueUpdate, QueueOut,
    TicketOut, PriorityUpdate, CallNextRequest,
    QueueMetrics, AdvanceOut,
)
from app.modules.queues.service import QueueService
from app.modules.queues.admission import AdmissionService
from app.modules.queues.advancement import AdvancementEngine

router = APIRouter()

async def get_session():
    async with SessionLocal() as session:
        yield session

def svc(session: AsyncSession = Depends(get_session)) -> QueueService:
    return QueueService(session)

def admission_svc(session: AsyncSession = Depends(get_session)) -> AdmissionService:
    return AdmissionService(session)

def engine_svc(session: AsyncSession = Depends(get_session)) -> AdvancementEngine:
    return AdvancementEngine(session)

async def _own_ticket(service: QueueService, principal: Principal, ticket_id: uuid.UUID):
    obj = await service.get_ticket(principal.org_id, ticket_id)
    if obj.holder_id != principal.user_id and not principal.is_staff:
        # don't reveal other holders' tickets
        raise HTTPException(status_code=404, detail="Ticket not found")
    return obj

# ---- Queue configuration ----

@router.post("/queues", response_model=QueueOut, dependencies=[Depends(require_scopes("queues:admin"))])
async def create_queue(
    payload: QueueCreate,
    principal: Principal = Depends(get_principal),
    service: QueueService = Depends(svc),
):
    return await service.create_queue(principal.org_id, payload)

@router.get("/queues", response_model=list[QueueOut], dependencies=[Depends(require_scopes("queues:read"))])
async def list_queues(
    principal: Principal = Depends(get_principal),
    service: QueueService = Depends(svc),
):
    return await service.list_queues(principal.org_id)

@router.get("/queues/{queue_id}", response_model=QueueOut, dependencies=[Depends(require_scopes("queues:read"))])
async def get_queue(
    queue_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    service: QueueService = Depends(svc),
):
    return await service.get_config(principal.org_id, queue_id)

@router.patch("/queues/{queue_id}", response_model=QueueOut, dependencies=[Depends(require_scopes("queues:admin"))])
async def update_queue(
    queue_id: uuid.UUID,
    payload: QueueUpdate,
    principal: Principal = Depends(get_principal),
    service: QueueService = Depends(svc),
):
    return await service.update_config(principal.org_id, queue_id, payload)

# ---- Admission ----

@router.post("/queues/{queue_id}/join", response_model=TicketOut, status_code=201, dependencies=[Depends(require_scopes("queues:join"))])
async def join_queue(
    queue_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    admission: AdmissionService = Depends(admission_svc),
):
    return await admission.join(principal.org_id, principal.user_id, queue_id)

@router.post("/tickets/{ticket_id}/leave", response_model=TicketOut, dependencies=[Depends(require_scopes("queues:join"))])
async def leave_queue(
    ticket_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    service: QueueService = Depends(svc),
    admission: AdmissionService = Depends(admission_svc),
):
    await _own_ticket(service, principal, ticket_id)
    return await admission.leave(principal.org_id, ticket_id)

# ---- Reads ----

@router.get("/queues/{queue_id}/active", response_model=list[TicketOut], dependencies=[Depends(require_scopes("queues:read"))])
async def list_active_queue(
    queue_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    service: QueueService = Depends(svc),
):
    return await service.list_active(principal.org_id, queue_id)

@router.get("/tickets/{ticket_id}", response_model=TicketOut, dependencies=[Depends(require_scopes("queues:read"))])
async def get_ticket(
    ticket_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    service: QueueService = Depends(svc),
):
    return await _own_ticket(service, principal, ticket_id)

@router.get("/tickets/{ticket_id}/metrics", response_model=QueueMetrics, dependencies=[Depends(require_scopes("queues:read"))])
async def ticket_metrics(
    ticket_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    service: QueueService = Depends(svc),
):
    await _own_ticket(service, principal, ticket_id)
    return await service.metrics(principal.org_id, ticket_id)

@router.get("/me/tickets/history", response_model=list[TicketOut], dependencies=[Depends(require_scopes("queues:read"))])
async def my_history(
    limit: int = Query(default=50, ge=1, le=200), offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_principal),
    service: QueueService = Depends(svc),
):
    return await service.history(principal.org_id, principal.user_id, limit=limit, offset=offset)

# ---- Advancement (staff) ----

@router.post("/queues/{queue_id}/call-next", response_model=AdvanceOut, dependencies=[Depends(require_scopes("queues:staff"))])
async def call_next(
    queue_id: uuid.UUID,
    payload: CallNextRequest | None = None,
    principal: Principal = Depends(get_principal),
    engine: AdvancementEngine = Depends(engine_svc),
):
    force = payload.force_advance if payload else False
    res = await engine.call_next(principal.org_id, queue_id, force_advance=force)
    return AdvanceOut.model_validate(res, from_attributes=True)

@router.post("/queues/{queue_id}/tickets/{ticket_id}/complete", response_model=AdvanceOut, dependencies=[Depends(require_scopes("queues:staff"))])
async def complete_service(
    queue_id: uuid.UUID,
    ticket_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    engine: AdvancementEngine = Depends(engine_svc),
):
    res = await engine.complete_service(principal.org_id, ticket_id, queue_id)
    return AdvanceOut.model_validate(res, from_attributes=True)

@router.post("/queues/{queue_id}/tickets/{ticket_id}/skip", response_model=AdvanceOut, dependencies=[Depends(require_scopes("queues:staff"))])
async def skip_ticket(
    queue_id: uuid.UUID,
    ticket_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    engine: AdvancementEngine = Depends(engine_svc),
):
    res = await engine.skip(principal.org_id, ticket_id, queue_id)
    return AdvanceOut.model_validate(res, from_attributes=True)

@router.post("/tickets/{ticket_id}/priority", response_model=TicketOut, dependencies=[Depends(require_scopes("queues:staff"))])
async def set_priority(
    ticket_id: uuid.UUID,
    payload: PriorityUpdate,
    principal: Principal = Depends(get_principal),
    engine: AdvancementEngine = Depends(engine_svc),
):
    return await engine.set_priority(principal.org_id, ticket_id, payload.is_priority)
