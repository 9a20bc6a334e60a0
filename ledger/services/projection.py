# ledger/services/projection.py
from __future__ import annotations

import inspect
from typing import Awaitable, Callable, Dict, List, Optional, Union

from ledger.models import ChangeEvent, OrderSnapshot, ViewerSession
from ledger.services.fanout_service import FanoutService, Subscription
from utils.logger import logger

SnapshotLoader = Callable[[ViewerSession], Union[List[OrderSnapshot], Awaitable[List[OrderSnapshot]]]]


class ProjectionCache:
    """
    A viewer's local, eventually-consistent view of the orders it may see.

    Events are applied idempotently: the row version only moves forward, so a
    duplicate or stale event is a no-op. `reload()` replaces the whole view
    with a fresh snapshot; events that arrive while the snapshot is loading
    are buffered and replayed on top of it.
    """

    def __init__(self, session: ViewerSession, loader: SnapshotLoader) -> None:
        self.session = session
        self._loader = loader
        self._orders: Dict[str, OrderSnapshot] = {}
        self._loading = False
        self._buffer: List[ChangeEvent] = []
        self._sub: Optional[Subscription] = None
        self.applied = 0
        self.ignored = 0

    # ---- event path ---------------------------------------------------------

    def _visible(self, snap: OrderSnapshot) -> bool:
        return self.session.is_admin or snap.has_party(self.session.party_id)

    def apply(self, event: ChangeEvent) -> bool:
        """Returns True if the view changed."""
        if self._loading:
            self._buffer.append(event)
            return False
        snap = event.order
        if not self._visible(snap):
            self.ignored += 1
            return False
        cur = self._orders.get(snap.order_id)
        if cur is not None and cur.version >= snap.version:
            self.ignored += 1
            return False
        self._orders[snap.order_id] = snap
        self.applied += 1
        return True

    async def on_event(self, event: ChangeEvent) -> None:
        self.apply(event)

    # ---- reload -------------------------------------------------------------

    async def reload(self) -> int:
        self._loading = True
        try:
            res = self._loader(self.session)
            rows = await res if inspect.isawaitable(res) else res
        except Exception:
            self._loading = False
            self._buffer.clear()
            raise
        self._orders = {s.order_id: s for s in rows if self._visible(s)}
        self._loading = False
        pending, self._buffer = self._buffer, []
        for ev in pending:
            self.apply(ev)
        logger.debug(f"[projection] {self.session.viewer_id} reloaded {len(self._orders)} orders "
                     f"(+{len(pending)} buffered)")
        return len(self._orders)

    # ---- connection ---------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._sub is not None and not self._sub.closed.is_set()

    async def connect(self, fanout: FanoutService) -> Subscription:
        """Subscribe first, then load the snapshot, so no change falls in between."""
        self._loading = True
        self._sub = fanout.subscribe(self.session, self.on_event)
        await self.reload()
        return self._sub

    async def disconnect(self, fanout: FanoutService) -> None:
        if self._sub is not None:
            await fanout.unsubscribe(self._sub.sub_id)
            self._sub = None

    async def reconnect(self, fanout: FanoutService) -> Subscription:
        await self.disconnect(fanout)
        return await self.connect(fanout)

    # ---- reads --------------------------------------------------------------

    def get(self, order_id: str) -> Optional[OrderSnapshot]:
        return self._orders.get(order_id)

    def orders(self) -> List[OrderSnapshot]:
        return sorted(self._orders.values(), key=lambda s: (-s.created_at, s.order_id))

    def state(self) -> Dict[str, tuple]:
        """Comparable view: order_id -> (status, version)."""
        return {k: (v.status, v.version) for k, v in self._orders.items()}

    def __len__(self) -> int:
        return len(self._orders)
