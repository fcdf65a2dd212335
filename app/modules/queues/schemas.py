import uuid
from datetime import datetime
from pydantic import BaseModel, Field
from app.core.config import settings

# ---- Queue configuration ----

class QueueCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    max_capacity: int | None = Field(default=None, ge=1)
    avg_service_time_minutes: int = Field(default_factory=lambda: settings.DEFAULT_AVG_SERVICE_MINUTES, ge=1)
    maintenance_mode: bool = False
    auto_advance: bool = False
    auto_rollback: bool = False

class QueueUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    max_capacity: int | None = Field(default=None, ge=1)
    avg_service_time_minutes: int | None = Field(default=None, ge=1)
    maintenance_mode: bool | None = None
    auto_advance: bool | None = None
    auto_rollback: bool | None = None

class QueueOut(BaseModel):
    id: uuid.UUID
    org_id: uuid.UUID
    name: str
    max_capacity: int | None
    avg_service_time_minutes: int
    maintenance_mode: bool
    auto_advance: bool
    auto_rollback: bool
    last_ticket_number: int

    class Config:
        from_attributes = True

# ---- Tickets ----

class TicketOut(BaseModel):
    id: uuid.UUID
    queue_id: uuid.UUID
    holder_id: uuid.UUID
    number: int
    status: str
    is_priority: bool
    created_at: datetime
    called_at: datetime | None
    completed_at: datetime | None

    class Config:
        from_attributes = True

class PriorityUpdate(BaseModel):
    is_priority: bool

class CallNextRequest(BaseModel):
    force_advance: bool = False

# ---- Live metrics ----

class QueueMetrics(BaseModel):
    ticket_id: uuid.UUID
    position: int
    people_ahead: int
    total_in_line: int
    estimated_wait_minutes: int
    estimated_wait_label: str  # "Next!" or "~N mins"
    service_around_time: str   # local time of day, e.g. "3:05 PM"

# ---- Advancement ----

class AdvanceOut(BaseModel):
    advanced: bool
    empty: bool
    serving: TicketOut | None = None
    previous: TicketOut | None = None

    class Config:
        from_attributes = True
