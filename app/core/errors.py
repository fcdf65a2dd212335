"""Business-rule errors raised by the queue engine.

Every error carries a stable ``code`` and the HTTP status the API layer maps
it to. None of these are retried: they are rejections, not faults, and the
service rolls back its transaction before raising.
"""

class QueueError(Exception):
    code = "queue_error"
    status_code = 400

    def __init__(self, message: str | None = None, **context):
        self.message = message or self.code
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message}
        if self.context:
            body["context"] = {k: str(v) for k, v in self.context.items()}
        return body


class ValidationError(QueueError):
    code = "validation_error"
    status_code = 422


class NotFoundError(QueueError):
    code = "not_found"
    status_code = 404


class ConflictError(QueueError):
    code = "conflict"
    status_code = 409


class AlreadyActive(ConflictError):
    code = "already_active"


class CapacityExceeded(ConflictError):
    code = "capacity_exceeded"


class StaleTicket(ConflictError):
    code = "stale_ticket"


class NotWaiting(ConflictError):
    code = "not_waiting"


class QueueUnavailable(ConflictError):
    code = "queue_unavailable"
