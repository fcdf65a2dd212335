from typing import Protocol, runtime_checkable

@runtime_checkable
class EventBusPort(Protocol):
    """Where committed queue events go once they leave the outbox."""

    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None: ...

    async def close(self) -> None: ...
