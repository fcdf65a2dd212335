from app.core.config import settings
from app.platform.ports.event_bus import EventBusPort
from app.platform.adapters.bus_noop import NoopEventBus

class ProviderRegistry:
    def __init__(self):
        self._event_bus: EventBusPort | None = None

    def event_bus(self) -> EventBusPort:
        if self._event_bus is None:
            prov = (settings.EVENT_BUS_PROVIDER or "noop").lower()
            if prov == "redis":
                from app.platform.adapters.bus_redis import RedisEventBus
                self._event_bus = RedisEventBus()
            else:
                self._event_bus = NoopEventBus()
        return self._event_bus

    async def close(self) -> None:
        if self._event_bus is not None:
            await self._event_bus.close()
            self._event_bus = None
