import json
import logging
from app.platform.ports.event_bus import EventBusPort

log = logging.getLogger("bus.noop")

class NoopEventBus(EventBusPort):
    """Logs instead of publishing; the default until a realtime transport is wired."""

    def __init__(self):
        self.published: list[tuple[str, str, dict]] = []

    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None:
        self.published.append((topic, key, value))
        log.info("[NOOP BUS] topic=%s key=%s type=%s", topic, key, value.get("event_type"))
        log.debug("[NOOP BUS] value=%s headers=%s", json.dumps(value), headers or {})

    async def close(self) -> None:
        self.published.clear()
