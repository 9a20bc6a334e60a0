# ledger/event_bus.py
import asyncio
import contextlib
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Protocol, Union

from pydantic import ValidationError

from ledger.models import ChangeEvent
from ledger.stores.order_store import OrderStore
from utils.logger import logger

Handler = Callable[[Any], Union[None, Awaitable[None]]]

# Common topics
TOPIC_ORDER_CHANGE = "order.change"


async def wait_for_wake(wake: asyncio.Event, timeout: float) -> None:
    """
    Sleep until `wake` is set or `timeout` passes, then clear it. A cancel
    always reaches the caller, even when the event fires in the same turn.
    """
    waiter = asyncio.create_task(wake.wait())
    try:
        await asyncio.wait({waiter}, timeout=timeout)
    finally:
        waiter.cancel()
    wake.clear()


class ChangeFeedTransport(Protocol):
    async def publish(self, event: Mapping[str, Any]) -> None: ...
    async def consume(self, on_message: Callable[[Dict[str, Any]], Awaitable[None]]) -> None: ...


class EventBus:
    """
    Lightweight in-process pub/sub. Handlers run in subscription order;
    a failing handler is logged and does not stop the others.
    """

    def __init__(self) -> None:
        self._subs: Dict[str, List[Handler]] = {}

    def subscribe(self, topic: str, handler: Handler) -> None:
        self._subs.setdefault(topic, []).append(handler)

    async def publish(self, topic: str, payload: Any) -> None:
        for h in self._subs.get(topic, []):
            try:
                res = h(payload)
                if inspect.isawaitable(res):
                    await res
            except Exception as e:
                logger.exception(f"[bus] handler {getattr(h, '__qualname__', h)!r} failed on {topic}: {e!r}")

    async def on_feed_message(self, raw: Dict[str, Any]) -> None:
        """Transport callback: decode one wire event and publish it locally."""
        try:
            event = ChangeEvent.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"[bus] dropping malformed change event: {e}")
            return
        await self.publish(TOPIC_ORDER_CHANGE, event)


class ChangeFeedPublisher:
    """
    Drains the order outbox into the change-feed transport.

    Rows are deleted only after the transport accepted them, so a crash in
    between re-sends them (at-least-once); subscribers dedupe on
    ChangeEvent.key. Delivered events are not kept.
    """

    def __init__(self, store: OrderStore, transport: ChangeFeedTransport, *,
                 flush_interval_s: float = 0.2, batch_size: int = 500) -> None:
        self._store = store
        self._transport = transport
        self._interval = flush_interval_s
        self._batch = batch_size
        self._wake = asyncio.Event()
        self._flush_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._stopping = False
        self.published = 0

    def notify(self) -> None:
        """Called after a write; wakes the flush loop early."""
        self._wake.set()

    async def flush(self) -> int:
        """Publish every pending outbox row in sequence order; returns how many went out."""
        async with self._flush_lock:
            sent = 0
            while True:
                pending = self._store.pending_events(self._batch)
                if not pending:
                    return sent
                done: List[int] = []
                try:
                    for ev in pending:
                        await self._transport.publish(ev.model_dump(mode="json"))
                        done.append(ev.seq)
                finally:
                    self._store.ack_published(done)
                    sent += len(done)
                    self.published += len(done)

    async def run_forever(self) -> None:
        while not self._stopping:
            try:
                await self.flush()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"[feed] publish failed, will retry: {e!r}")
            await wait_for_wake(self._wake, self._interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.create_task(self.run_forever(), name="change-feed-publisher")
        return self._task

    async def stop(self) -> None:
        self._stopping = True
        self._wake.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        # last attempt; whatever fails stays in the outbox for the next start
        try:
            await self.flush()
        except Exception as e:
            logger.warning(f"[feed] final flush failed, {self._store.outbox_backlog()} rows left: {e!r}")
