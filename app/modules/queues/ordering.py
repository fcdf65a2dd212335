"""Who goes next.

Waiting tickets are totally ordered: priority tickets first, then by arrival
(``created_at``), then by ticket number for arrivals that share a timestamp.
The same rule is expressed three ways so the store, the estimator and
in-memory callers never disagree.
"""
from sqlalchemy import and_, or_, case, ColumnElement
from app.modules.queues.models import QueueTicket, SERVING

def order_by() -> tuple:
    """ORDER BY clauses for the waiting line."""
    return (
        QueueTicket.is_priority.desc(),
        QueueTicket.created_at.asc(),
        QueueTicket.number.asc(),
    )

def active_order_by() -> tuple:
    # serving slot on top, then the waiting line
    return (case((QueueTicket.status == SERVING, 0), else_=1),) + order_by()

def sort_key(ticket) -> tuple:
    return (not ticket.is_priority, ticket.created_at, ticket.number)

def ranks_before(ticket: QueueTicket) -> ColumnElement[bool]:
    """Predicate matching tickets that sort strictly ahead of ``ticket``."""
    same_tier_ahead = and_(
        QueueTicket.is_priority.is_(bool(ticket.is_priority)),
        or_(
            QueueTicket.created_at < ticket.created_at,
            and_(QueueTicket.created_at == ticket.created_at, QueueTicket.number < ticket.number),
        ),
    )
    if ticket.is_priority:
        return same_tier_ahead
    return or_(QueueTicket.is_priority.is_(True), same_tier_ahead)
