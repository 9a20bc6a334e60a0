# ledger/services/reconcile_service.py
from __future__ import annotations

import asyncio
import contextlib
import time
import zlib
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from ledger.config import ReconcileSettings
from ledger.enums import ContractStatus, Actor, ReconcileOutcome, accept_sync
from ledger.errors import (
    LedgerError, OracleUnavailable, UnknownStatusCode, InvariantViolation, WriteConflict, StatusRegression,
)
from ledger.event_bus import ChangeFeedPublisher, wait_for_wake
from ledger.models import ReviewItem
from ledger.stores.order_store import OrderStore
from ledger.stores.review_store import ReviewStore
from utils.logger import logger


@dataclass
class WorkItem:
    order_id: str
    contract_id: int
    due_at: float
    failures: int = 0
    last_error: str = ""
    last_delay: float = 0.0


class ReconcileService:
    """
    Keeps cached order status converged on the oracle's answer.

    Working set = non-terminal orders + newly registered + explicitly stale.
    Each cycle picks the due items, partitions them over `workers` by order
    id and reconciles them concurrently. A per-order lock guarantees at most
    one in-flight reconciliation per order.
    """

    def __init__(self,
                 oracle,
                 order_store: OrderStore,
                 review_store: ReviewStore,
                 publisher: Optional[ChangeFeedPublisher],
                 settings: ReconcileSettings,
                 *,
                 clock: Callable[[], float] = time.monotonic,
                 ) -> None:
        self._oracle = oracle
        self._orders = order_store
        self._review = review_store
        self._publisher = publisher
        self._s = settings
        self._clock = clock

        self._working: Dict[str, WorkItem] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Counter = Counter()
        self._in_flight: set[str] = set()
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self.stats: Counter = Counter()

    # ---- working set --------------------------------------------------------

    def load_working_set(self) -> int:
        """Seed from the table: every non-terminal order not parked for review."""
        n = 0
        for order in self._orders.list_non_terminal():
            if order.order_id in self._review:
                continue
            self.track(order.order_id, order.contract_id)
            n += 1
        logger.info(f"[reconcile] working set loaded: {n} orders")
        return n

    def track(self, order_id: str, contract_id: int, *, delay: float = 0.0) -> None:
        item = self._working.get(order_id)
        if item is None:
            self._working[order_id] = WorkItem(order_id, int(contract_id), self._clock() + delay)
        else:
            item.due_at = min(item.due_at, self._clock() + delay)
        self._wake.set()

    def mark_stale(self, order_id: str) -> None:
        """Explicit refresh request: due now, even for orders that left the working set."""
        order = self._orders.get(order_id)
        self.track(order.order_id, order.contract_id)

    def forget(self, order_id: str) -> None:
        self._working.pop(order_id, None)

    def is_tracked(self, order_id: str) -> bool:
        return order_id in self._working

    def in_flight(self) -> List[str]:
        return sorted(self._in_flight)

    def due(self) -> List[WorkItem]:
        now = self._clock()
        return sorted(
            (w for w in self._working.values() if w.due_at <= now and w.order_id not in self._in_flight),
            key=lambda w: w.due_at,
        )

    # ---- one order ----------------------------------------------------------

    @contextlib.asynccontextmanager
    async def order_lock(self, order_id: str):
        """
        Single-writer section for one order; human writes take it too. The
        lock lives only while someone holds or waits for it.
        """
        lock = self._locks.setdefault(order_id, asyncio.Lock())
        self._lock_users[order_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[order_id] -= 1
            if self._lock_users[order_id] <= 0:
                del self._lock_users[order_id]
                self._locks.pop(order_id, None)

    def lock_count(self) -> int:
        return len(self._locks)

    async def reconcile_one(self, order_id: str) -> ReconcileOutcome:
        async with self.order_lock(order_id):
            self._in_flight.add(order_id)
            try:
                outcome = await self._reconcile_locked(order_id)
            finally:
                self._in_flight.discard(order_id)
        self.stats[outcome.value] += 1
        return outcome

    async def _reconcile_locked(self, order_id: str) -> ReconcileOutcome:
        order = self._orders.find(order_id)
        if order is None:
            self.forget(order_id)
            return ReconcileOutcome.SKIPPED
        item = self._working.get(order_id)
        if item is None:
            item = WorkItem(order_id, order.contract_id, self._clock())
            self._working[order_id] = item

        try:
            details = await self._oracle.get_details(order.contract_id)
        except OracleUnavailable as e:
            return self._on_failure(item, e)
        except UnknownStatusCode as e:
            logger.error(f"[reconcile] {order_id} contract={order.contract_id}: {e}")
            return self._on_failure(item, e)

        item.failures = 0
        item.last_error = ""
        authoritative = details.status
        # the cached row may have moved while the oracle call was in flight
        order = self._orders.get(order_id)

        if order.status == authoritative:
            self._orders.touch_reconciled(order_id, authoritative)
            outcome = ReconcileOutcome.UNCHANGED
        elif not accept_sync(order.status, authoritative):
            self._alert(StatusRegression("oracle status rejected", order_id=order_id,
                                         contract_id=order.contract_id, cached=order.status.value,
                                         authoritative=authoritative.value))
            outcome = ReconcileOutcome.REJECTED
        else:
            try:
                self._orders.apply_status(
                    order_id, authoritative,
                    actor=Actor.ORACLE_SYNC,
                    expected_version=order.version,
                    authoritative=authoritative,
                )
            except InvariantViolation as e:
                e.ctx.setdefault("authoritative", authoritative.value)
                self._alert(e)
                outcome = ReconcileOutcome.REJECTED
            except WriteConflict as e:
                logger.info(f"[reconcile] {order_id} lost a write race, retrying now: {e}")
                item.due_at = self._clock()
                return ReconcileOutcome.SKIPPED
            else:
                logger.info(f"[reconcile] {order_id} {order.status.value} -> {authoritative.value}")
                if self._publisher is not None:
                    self._publisher.notify()
                order = self._orders.get(order_id)
                outcome = ReconcileOutcome.UPDATED

        self._reschedule(item, order.status)
        return outcome

    def _reschedule(self, item: WorkItem, cached: ContractStatus) -> None:
        if cached.is_terminal:
            self.forget(item.order_id)
            return
        item.last_delay = self._s.poll_interval_s
        item.due_at = self._clock() + self._s.poll_interval_s

    def _on_failure(self, item: WorkItem, exc: Exception) -> ReconcileOutcome:
        item.failures += 1
        item.last_error = str(exc)
        if item.failures > self._s.max_retries:
            self._review.flag(ReviewItem(
                order_id=item.order_id,
                contract_id=item.contract_id,
                reason="retries exhausted" if isinstance(exc, OracleUnavailable) else "unknown status code",
                attempts=item.failures,
                last_error=item.last_error,
            ))
            self.forget(item.order_id)
            logger.error(f"[reconcile] {item.order_id} escalated for review after {item.failures} failures: {exc}")
            return ReconcileOutcome.ESCALATED

        delay = self._s.backoff_delay(item.failures)
        item.last_delay = delay
        item.due_at = self._clock() + delay
        logger.warning(f"[reconcile] {item.order_id} attempt {item.failures} failed, retry in {delay:.1f}s: {exc}")
        return ReconcileOutcome.UNAVAILABLE

    def _alert(self, err: LedgerError) -> None:
        self.stats["alerts"] += 1
        logger.warning(f"[ALERT] {type(err).__name__}: {err}")

    # ---- cycles -------------------------------------------------------------

    def _partition(self, items: List[WorkItem]) -> List[List[WorkItem]]:
        buckets: List[List[WorkItem]] = [[] for _ in range(self._s.workers)]
        for w in items:
            buckets[zlib.crc32(w.order_id.encode()) % self._s.workers].append(w)
        return [b for b in buckets if b]

    async def _worker(self, items: List[WorkItem]) -> List[ReconcileOutcome]:
        out = []
        for w in items:
            out.append(await self.reconcile_one(w.order_id))
        return out

    async def run_cycle(self) -> Dict[str, ReconcileOutcome]:
        """Reconcile every due order once; returns outcome per order id."""
        items = self.due()
        if not items:
            return {}
        parts = self._partition(items)
        results = await asyncio.gather(*(self._worker(p) for p in parts))
        return {w.order_id: o for part, outs in zip(parts, results) for w, o in zip(part, outs)}

    async def run_forever(self) -> None:
        while not self._stopping:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"[reconcile] cycle failed: {e!r}")
            await wait_for_wake(self._wake, self._s.tick_s)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopping = False
            self.load_working_set()
            self._task = asyncio.create_task(self.run_forever(), name="reconciler")
        return self._task

    async def stop(self) -> None:
        self._stopping = True
        self._wake.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    def status(self) -> Dict[str, object]:
        now = self._clock()
        return {
            "tracked": len(self._working),
            "in_flight": self.in_flight(),
            "due": len(self.due()),
            "locks": self.lock_count(),
            "retrying": {
                w.order_id: {"failures": w.failures, "next_in_s": round(max(0.0, w.due_at - now), 3),
                             "last_error": w.last_error}
                for w in self._working.values() if w.failures
            },
            "stats": dict(self.stats),
        }
