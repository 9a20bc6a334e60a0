# ledger/app/service.py
import asyncio, contextlib, logging, sqlite3, time
from typing import Any, Callable, Dict, Mapping, Optional

from adapters.bus.inmemory import InMemoryBus
from infra import HttpContainer, http_healthcheck
from infra.redis_stream import RedisStreamsTransport
from ledger.app.ledger_api import LedgerAPI
from ledger.config import FeedSettings, LedgerSettings, settings_from_cfg
from ledger.event_bus import EventBus, ChangeFeedPublisher, ChangeFeedTransport, TOPIC_ORDER_CHANGE
from ledger.services.fanout_service import FanoutService
from ledger.services.notification_service import NotificationService
from ledger.services.oracle_service import OracleService
from ledger.services.query_service import QueryService
from ledger.services.reconcile_service import ReconcileService
from ledger.stores.db import open_db
from ledger.stores.notification_store import NotificationStore
from ledger.stores.order_store import OrderStore
from ledger.stores.review_store import ReviewStore
from utils.logger import logger


def make_transport(feed: FeedSettings) -> ChangeFeedTransport:
    if feed.transport == "redis":
        return RedisStreamsTransport(feed.redis_dsn, feed.stream)
    if feed.transport == "memory":
        return InMemoryBus()
    raise ValueError(f"Unknown feed transport: {feed.transport}")


class LedgerService:
    """
    Composition root: stores, oracle client, reconciler, change feed, fan-out
    and notifications wired together, with one start/stop lifecycle.
    """

    def __init__(self,
                 settings: LedgerSettings,
                 conn: sqlite3.Connection,
                 oracle,
                 transport: ChangeFeedTransport,
                 *,
                 http: Optional[HttpContainer] = None,
                 clock: Callable[[], float] = time.monotonic,
                 wall_clock: Callable[[], float] = time.time,
                 ):
        self.settings = settings
        self.conn = conn
        self.oracle = oracle
        self.transport = transport
        self.http = http

        self.orders = OrderStore(conn)
        self.review = ReviewStore(conn)
        self.notification_store = NotificationStore(conn)

        self.bus = EventBus()
        self.publisher = ChangeFeedPublisher(self.orders, transport,
                                             flush_interval_s=settings.feed.flush_interval_s)
        self.reconciler = ReconcileService(oracle, self.orders, self.review, self.publisher,
                                           settings.reconcile, clock=clock)
        self.fanout = FanoutService(queue_max=settings.feed.queue_max)
        self.notifications = NotificationService(self.notification_store,
                                                 platform_fee_pct=settings.platform_fee_pct,
                                                 enabled=settings.notifications_enabled)
        self.query = QueryService(self.orders)
        self.api = LedgerAPI(self.orders, self.review, oracle, self.reconciler, self.publisher,
                             self.query, self.notifications, wall_clock=wall_clock)

        self.bus.subscribe(TOPIC_ORDER_CHANGE, self.fanout.on_change)
        self.bus.subscribe(TOPIC_ORDER_CHANGE, self.notifications.on_change)

        self._consumer: Optional[asyncio.Task] = None
        self._started = False
        self._closed = False

    @classmethod
    async def from_cfg(cls, cfg: Mapping[str, Any]) -> "LedgerService":
        settings = settings_from_cfg(cfg)
        conn = open_db(settings.db_path)
        http = await HttpContainer.start(cfg, logger=logging.getLogger("oracle"))
        oracle = OracleService(http.http, settings.oracle)
        return cls(settings, conn, oracle, make_transport(settings.feed), http=http)

    async def start(self, *, reconcile: bool = True) -> None:
        if self._started:
            return
        self._consumer = asyncio.create_task(self.transport.consume(self.bus.on_feed_message), name="feed-consumer")
        self.publisher.start()
        if reconcile:
            self.reconciler.start()
        self._started = True
        logger.info(f"LedgerService started: transport={self.settings.feed.transport} "
                    f"workers={self.settings.reconcile.workers}")

    async def stop(self) -> None:
        if self._closed:
            return
        await self.reconciler.stop()
        await self.publisher.stop()
        stop = getattr(self.transport, "stop", None)
        if stop is not None:
            await stop()
        if self._consumer:
            self._consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer
            self._consumer = None
        await self.fanout.close()
        if self.http is not None:
            await self.http.stop()
        self.conn.close()
        self._started = False
        self._closed = True
        logger.info("LedgerService stopped.")

    async def ready(self) -> bool:
        if self.http is None:
            return self._started
        return self._started and await http_healthcheck(self.http.http)

    def status(self) -> Dict[str, Any]:
        return {
            "reconciler": self.reconciler.status(),
            "fanout": self.fanout.status(),
            "feed": {
                "transport": self.settings.feed.transport,
                "published": self.publisher.published,
                "outbox_backlog": self.orders.outbox_backlog(),
            },
            "oracle": {
                "calls": getattr(self.oracle, "calls", None),
                "failures": getattr(self.oracle, "failures", None),
                "healthy": self.http.healthy if self.http else None,
            },
            "review_queue": len(self.review.list()),
        }
