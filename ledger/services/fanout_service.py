# ledger/services/fanout_service.py
from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

from ledger.errors import PermissionDenied, SubscriberDeliveryFailure
from ledger.idempotency import make_subscription_id
from ledger.models import ChangeEvent, ViewerSession
from utils.logger import logger

Deliver = Callable[[ChangeEvent], Awaitable[None]]


class Predicate(Protocol):
    def matches(self, event: ChangeEvent) -> bool: ...


@dataclass(frozen=True)
class PartyPredicate:
    """Orders where the viewer is farmer_id or buyer_id."""
    party_id: str

    def matches(self, event: ChangeEvent) -> bool:
        return event.order.has_party(self.party_id)


@dataclass(frozen=True)
class AllOrders:
    """Admin back-office view."""

    def matches(self, event: ChangeEvent) -> bool:
        return True


@dataclass
class Subscription:
    sub_id: str
    session: ViewerSession
    predicate: Predicate
    deliver: Deliver
    queue: asyncio.Queue
    task: Optional[asyncio.Task] = None
    delivered: int = 0
    drop_reason: Optional[str] = None
    closed: asyncio.Event = field(default_factory=asyncio.Event)


def predicate_for(session: ViewerSession, party_id: Optional[str] = None) -> Predicate:
    """
    Resolve the subscription predicate for a session. Non-admins may only
    ask for their own party id; anything else is rejected outright.
    """
    if session.is_admin:
        return PartyPredicate(party_id) if party_id else AllOrders()
    own = session.party_id
    if not own:
        raise PermissionDenied("session has no party id", viewer_id=session.viewer_id)
    if party_id and party_id != own:
        raise PermissionDenied("cannot subscribe to another party's orders",
                               viewer_id=session.viewer_id, party_id=party_id)
    return PartyPredicate(own)


class FanoutService:
    """
    Registry of live subscriptions.

    Every subscriber owns a bounded queue and a delivery task, so a slow
    subscriber never blocks the others. Events are enqueued in publish order,
    which gives per-order FIFO per subscriber. A subscriber whose queue fills
    up or whose delivery fails is dropped; it recovers by reloading.
    """

    def __init__(self, queue_max: int = 256) -> None:
        self._queue_max = queue_max
        self._subs: Dict[str, Subscription] = {}
        self.dispatched = 0
        self.dropped = 0

    def subscribe(self, session: ViewerSession, deliver: Deliver, *,
                  party_id: Optional[str] = None) -> Subscription:
        sub = Subscription(
            sub_id=make_subscription_id(session.viewer_id),
            session=session,
            predicate=predicate_for(session, party_id),
            deliver=deliver,
            queue=asyncio.Queue(maxsize=self._queue_max),
        )
        sub.task = asyncio.create_task(self._deliver_loop(sub), name=f"fanout-{sub.sub_id}")
        self._subs[sub.sub_id] = sub
        logger.info(f"[fanout] + {sub.sub_id} role={session.role.value} predicate={sub.predicate}")
        return sub

    async def unsubscribe(self, sub_id: str) -> None:
        sub = self._subs.pop(sub_id, None)
        if sub is None:
            return
        sub.closed.set()
        if sub.task and sub.task is not asyncio.current_task():
            sub.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sub.task
        self._discard_backlog(sub)
        logger.info(f"[fanout] - {sub_id} delivered={sub.delivered}")

    def dispatch(self, event: ChangeEvent) -> int:
        """Enqueue the event for every matching subscriber; never blocks."""
        n = 0
        for sub in list(self._subs.values()):
            if not sub.predicate.matches(event):
                continue
            try:
                sub.queue.put_nowait(event)
                n += 1
            except asyncio.QueueFull:
                self._drop(sub, "lagged")
        self.dispatched += n
        return n

    async def on_change(self, event: ChangeEvent) -> None:
        """EventBus handler for TOPIC_ORDER_CHANGE."""
        self.dispatch(event)

    def _drop(self, sub: Subscription, reason: str) -> None:
        if self._subs.pop(sub.sub_id, None) is None:
            return
        self.dropped += 1
        sub.drop_reason = reason
        sub.closed.set()
        if sub.task and sub.task is not asyncio.current_task():
            sub.task.cancel()
        self._discard_backlog(sub)
        logger.info(f"[fanout] dropped {sub.sub_id}: {reason}")

    @staticmethod
    def _discard_backlog(sub: Subscription) -> None:
        # keeps queue.join() in drain() from waiting on a dead subscriber
        while not sub.queue.empty():
            sub.queue.get_nowait()
            sub.queue.task_done()

    async def _deliver_loop(self, sub: Subscription) -> None:
        while True:
            event = await sub.queue.get()
            try:
                await sub.deliver(event)
                sub.delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failure = SubscriberDeliveryFailure(str(e) or type(e).__name__,
                                                    sub_id=sub.sub_id, key=event.key)
                self._drop(sub, str(failure))
                return
            finally:
                sub.queue.task_done()

    async def drain(self) -> None:
        """Wait until every live subscriber has consumed its queue."""
        for sub in list(self._subs.values()):
            await sub.queue.join()

    def get(self, sub_id: str) -> Optional[Subscription]:
        return self._subs.get(sub_id)

    def subscriptions(self) -> List[Subscription]:
        return list(self._subs.values())

    async def close(self) -> None:
        for sub_id in list(self._subs):
            await self.unsubscribe(sub_id)

    def status(self) -> Dict[str, object]:
        return {
            "subscribers": len(self._subs),
            "dispatched": self.dispatched,
            "dropped": self.dropped,
            "backlog": {s.sub_id: s.queue.qsize() for s in self._subs.values()},
        }
