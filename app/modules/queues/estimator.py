"""Live position and wait estimate for a ticket.

Everything here is derived from the store on each call: nothing is cached
and nothing is written, so observers can re-run it after every change.
"""
from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.config import settings
from app.core.errors import ValidationError
from app.modules.queues.models import Queue, QueueTicket, SERVING
from app.modules.queues.repository import QueueTicketRepository
from app.modules.queues.schemas import QueueMetrics

NEXT_LABEL = "Next!"

def wait_label(people_ahead: int, wait_minutes: int) -> str:
    return NEXT_LABEL if people_ahead == 0 else f"~{wait_minutes} mins"

def time_of_day(at: datetime, tz: tzinfo) -> str:
    local = at.astimezone(tz)
    hour = local.hour % 12 or 12
    return f"{hour}:{local.minute:02d} {'AM' if local.hour < 12 else 'PM'}"

def build_metrics(ticket_id, *, people_ahead: int, total_in_line: int, avg_service_minutes: int, now: datetime, tz: tzinfo) -> QueueMetrics:
    wait = people_ahead * avg_service_minutes
    return QueueMetrics(
        ticket_id=ticket_id,
        position=people_ahead + 1,
        people_ahead=people_ahead,
        total_in_line=total_in_line,
        estimated_wait_minutes=wait,
        estimated_wait_label=wait_label(people_ahead, wait),
        service_around_time=time_of_day(now + timedelta(minutes=wait), tz),
    )

class QueueEstimator:
    def __init__(self, session: AsyncSession, tz: tzinfo | None = None):
        self.tickets = QueueTicketRepository(session)
        self.tz = tz or ZoneInfo(settings.QUEUE_DISPLAY_TIMEZONE)

    async def estimate(self, ticket: QueueTicket, config: Queue, now: datetime | None = None) -> QueueMetrics:
        if not ticket.is_active:
            raise ValidationError("ticket is no longer in line", ticket_id=ticket.id, status=ticket.status)
        if ticket.queue_id != config.id:
            raise ValidationError("ticket does not belong to this queue", ticket_id=ticket.id, queue_id=config.id)

        serving_other = await self.tickets.count_serving(ticket.queue_id, exclude_id=ticket.id)
        total_waiting = await self.tickets.count_waiting(ticket.queue_id)

        if ticket.status == SERVING:
            people_ahead = 0
            any_serving = 1
        else:
            waiting_ahead = await self.tickets.count_waiting_ahead(ticket)
            people_ahead = min(serving_other, 1) + waiting_ahead
            any_serving = min(serving_other, 1)

        return build_metrics(
            ticket.id,
            people_ahead=people_ahead,
            total_in_line=any_serving + total_waiting,
            avg_service_minutes=config.avg_service_time_minutes,
            now=now or datetime.now(timezone.utc),
            tz=self.tz,
        )
