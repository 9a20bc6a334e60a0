import asyncio
from typing import Dict, Any, Awaitable, Callable


class InMemoryBus:
    """Single-process change-feed transport; one FIFO queue, one consumer."""

    def __init__(self, maxsize: int = 10_000):
        self._q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._stop = False

    async def publish(self, event: Dict[str, Any]) -> None:
        await self._q.put(event)

    async def consume(self, on_message: Callable[[Dict[str, Any]], Awaitable[None]]) -> None:
        while not self._stop:
            ev = await self._q.get()
            try:
                await on_message(ev)
            finally:
                self._q.task_done()

    async def drain(self) -> None:
        """Wait until every published event has been handed to the consumer."""
        await self._q.join()

    async def stop(self) -> None:
        self._stop = True

    def qsize(self) -> int:
        return self._q.qsize()
