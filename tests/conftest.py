# tests/conftest.py
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import asyncio
import logging
from collections import Counter, defaultdict, deque
from decimal import Decimal

import pytest
import pytest_asyncio

from adapters.bus.inmemory import InMemoryBus
from infra.http_client import HttpClient
from ledger.app.service import LedgerService
from ledger.config import settings_from_cfg
from ledger.enums import ContractStatus
from ledger.models import ContractDetails, Order
from ledger.stores.db import open_db
from ledger.stores.notification_store import NotificationStore
from ledger.stores.order_store import OrderStore
from ledger.stores.review_store import ReviewStore

RPC_URL = "http://oracle.test/rpc"


class FakeClock:
    """Monotonic clock the tests move by hand."""
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeOracle:
    """
    Stand-in for OracleService. `set` fixes the steady answer for a contract,
    `script` queues one-shot answers (a status or an exception) in front of it.
    """
    def __init__(self):
        self.status = {}
        self.extra = {}
        self._script = defaultdict(deque)
        self.calls = []
        self.active = Counter()
        self.max_active = Counter()
        self.gate = None

    def set(self, contract_id, status, **extra):
        self.status[contract_id] = status
        self.extra[contract_id] = extra

    def script(self, contract_id, *outcomes):
        self._script[contract_id].extend(outcomes)

    async def get_details(self, contract_id):
        self.calls.append(contract_id)
        self.active[contract_id] += 1
        self.max_active[contract_id] = max(self.max_active[contract_id], self.active[contract_id])
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            queue = self._script[contract_id]
            outcome = queue.popleft() if queue else self.status[contract_id]
            if isinstance(outcome, Exception):
                raise outcome
            return ContractDetails(contract_id=contract_id, status=outcome, **self.extra.get(contract_id, {}))
        finally:
            self.active[contract_id] -= 1

    async def get_status(self, contract_id):
        return (await self.get_details(contract_id)).status


def make_order(order_id="ord-1", contract_id=1, status=ContractStatus.PENDING,
               farmer_id="farmer-1", buyer_id="buyer-1", **kw) -> Order:
    kw.setdefault("crop_name", "maize")
    kw.setdefault("quantity", 10.0)
    kw.setdefault("amount", Decimal("2"))
    return Order(order_id=order_id, contract_id=contract_id, status=status,
                 farmer_id=farmer_id, buyer_id=buyer_id, **kw)


@pytest.fixture
def test_cfg():
    return {
        "oracle": {"rpc_url": RPC_URL, "timeout_ms": 500},
        "retries": {"rpc_max_attempts": 2, "backoff_ms": 1},
        "reconcile": {"workers": 3, "tick_s": 0.01, "poll_interval_s": 30,
                      "backoff_base_s": 1, "backoff_factor": 2, "backoff_max_s": 60, "max_retries": 3},
        "store": {"db_path": ":memory:"},
        "feed": {"transport": "memory", "flush_interval_s": 0.01},
        "fanout": {"queue_max": 16},
        "notifications": {"platform_fee_pct": 5},
        "control": {"token": None},
    }


@pytest.fixture
def settings(test_cfg):
    return settings_from_cfg(test_cfg)


@pytest.fixture
def conn():
    c = open_db(":memory:")
    yield c
    c.close()


@pytest.fixture
def order_store(conn):
    return OrderStore(conn)


@pytest.fixture
def review_store(conn):
    return ReviewStore(conn)


@pytest.fixture
def notification_store(conn):
    return NotificationStore(conn)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest_asyncio.fixture
async def service(settings, oracle, clock):
    """
    Full service over SQLite :memory: and the in-memory transport. The feed
    consumer and publisher run; reconciliation is driven by the test.
    """
    svc = LedgerService(settings, open_db(":memory:"), oracle, InMemoryBus(), clock=clock)
    await svc.start(reconcile=False)
    yield svc
    await svc.stop()


async def settle(svc: LedgerService) -> None:
    """Push everything committed through outbox -> transport -> bus -> subscribers."""
    await svc.publisher.flush()
    await svc.transport.drain()
    await svc.fanout.drain()


@pytest_asyncio.fixture
async def http_client(test_cfg):
    logger = logging.getLogger("HttpClientTest")
    async with HttpClient(test_cfg, logger=logger) as client:
        yield client
