import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, ForeignKey, Integer, Boolean, TIMESTAMP, Index, UniqueConstraint, text
from app.core.base import Base, TimestampedTenantMixin

# ---- Ticket status ----

WAITING = "waiting"
SERVING = "serving"
COMPLETED = "completed"
CANCELLED = "cancelled"

ACTIVE_STATUSES = (WAITING, SERVING)
TERMINAL_STATUSES = (COMPLETED, CANCELLED)

# ---- Queue configuration ----

class Queue(Base, TimestampedTenantMixin):
    name: Mapped[str] = mapped_column(String(128))
    max_capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None = unlimited
    avg_service_time_minutes: Mapped[int] = mapped_column(Integer, default=5)
    maintenance_mode: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_advance: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_rollback: Mapped[bool] = mapped_column(Boolean, default=False)

    # sequence backing QueueTicket.number; bumped under the queue row lock
    last_ticket_number: Mapped[int] = mapped_column(Integer, default=0)

# ---- Tickets ----

class QueueTicket(Base, TimestampedTenantMixin):
    queue_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("queue.id"), index=True)
    holder_id: Mapped[uuid.UUID] = mapped_column(index=True)
    number: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(16), default=WAITING)  # waiting, serving, completed, cancelled
    is_priority: Mapped[bool] = mapped_column(Boolean, default=False)

    called_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("queue_id", "number", name="uq_queueticket_number"),
        # one waiting/serving ticket per holder per queue
        Index(
            "uq_queueticket_active_holder", "queue_id", "holder_id", unique=True,
            postgresql_where=text("status IN ('waiting', 'serving')"),
            sqlite_where=text("status IN ('waiting', 'serving')"),
        ),
        # one serving slot per queue
        Index(
            "uq_queueticket_serving_slot", "queue_id", unique=True,
            postgresql_where=text("status = 'serving'"),
            sqlite_where=text("status = 'serving'"),
        ),
        Index("ix_queueticket_queue_status", "queue_id", "status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES
