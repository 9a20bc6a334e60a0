# tests/test_fanout_service.py
import asyncio

import pytest

from conftest import make_order, settle
from ledger.enums import Actor, ChangeKind, ContractStatus as S, ViewerRole
from ledger.errors import PermissionDenied
from ledger.models import ChangeEvent, OrderSnapshot, ViewerSession
from ledger.services.fanout_service import AllOrders, FanoutService, PartyPredicate, predicate_for

FARMER = ViewerSession("u-farmer", ViewerRole.FARMER, "farmer-1")
BUYER = ViewerSession("u-buyer", ViewerRole.BUYER, "buyer-1")
OTHER = ViewerSession("u-other", ViewerRole.BUYER, "buyer-2")
ADMIN = ViewerSession("u-admin", ViewerRole.ADMIN)


def event(order_id="ord-1", version=2, status=S.FUNDED, farmer="farmer-1", buyer="buyer-1") -> ChangeEvent:
    o = make_order(order_id, status=status, farmer_id=farmer, buyer_id=buyer, version=version)
    return ChangeEvent(kind=ChangeKind.STATUS_CHANGED, order_id=order_id, version=version,
                       old_status=S.PENDING, new_status=status, actor=Actor.ORACLE_SYNC, ts=1,
                       order=OrderSnapshot.from_order(o))


class Sink:
    def __init__(self, delay=0.0, fail=False):
        self.events = []
        self.delay = delay
        self.fail = fail

    async def __call__(self, ev):
        if self.fail:
            raise ConnectionResetError("socket closed")
        if self.delay:
            await asyncio.sleep(self.delay)
        self.events.append(ev)


def test_predicates():
    assert isinstance(predicate_for(ADMIN), AllOrders)
    assert predicate_for(ADMIN, "buyer-2") == PartyPredicate("buyer-2")
    assert predicate_for(FARMER) == PartyPredicate("farmer-1")
    assert predicate_for(FARMER, "farmer-1") == PartyPredicate("farmer-1")
    with pytest.raises(PermissionDenied):
        predicate_for(FARMER, "farmer-2")
    with pytest.raises(PermissionDenied):
        predicate_for(ViewerSession("anon", ViewerRole.BUYER))


@pytest.mark.asyncio
async def test_only_parties_and_admins_receive():
    fan = FanoutService()
    sinks = {s.viewer_id: Sink() for s in (FARMER, BUYER, OTHER, ADMIN)}
    for s in (FARMER, BUYER, OTHER, ADMIN):
        fan.subscribe(s, sinks[s.viewer_id])

    assert fan.dispatch(event()) == 3
    await fan.drain()
    assert [len(sinks[v].events) for v in ("u-farmer", "u-buyer", "u-other", "u-admin")] == [1, 1, 0, 1]
    await fan.close()


@pytest.mark.asyncio
async def test_per_order_fifo_per_subscriber():
    fan = FanoutService()
    sink = Sink()
    fan.subscribe(BUYER, sink)
    for v, st in ((2, S.FUNDED), (3, S.IN_PROGRESS), (4, S.DELIVERED)):
        fan.dispatch(event(version=v, status=st))
    await fan.drain()
    assert [e.version for e in sink.events] == [2, 3, 4]
    await fan.close()


@pytest.mark.asyncio
async def test_slow_subscriber_does_not_block_others():
    fan = FanoutService()
    slow, fast = Sink(delay=0.2), Sink()
    fan.subscribe(FARMER, slow)
    fan.subscribe(BUYER, fast)

    fan.dispatch(event())
    for _ in range(20):
        if fast.events:
            break
        await asyncio.sleep(0.005)
    assert len(fast.events) == 1 and slow.events == []
    await fan.close()


@pytest.mark.asyncio
async def test_lagging_subscriber_is_dropped_not_queued():
    fan = FanoutService(queue_max=2)
    sub = fan.subscribe(BUYER, Sink(delay=1.0))
    for v in range(2, 7):
        fan.dispatch(event(version=v))
    assert fan.get(sub.sub_id) is None
    assert sub.drop_reason == "lagged" and sub.closed.is_set()
    assert fan.dropped == 1
    await fan.close()


@pytest.mark.asyncio
async def test_delivery_failure_drops_subscriber():
    fan = FanoutService()
    sub = fan.subscribe(BUYER, Sink(fail=True))
    fan.dispatch(event())
    await sub.closed.wait()
    assert fan.get(sub.sub_id) is None
    assert "socket closed" in sub.drop_reason
    # later events are not queued for it
    assert fan.dispatch(event(version=3)) == 0


@pytest.mark.asyncio
async def test_unsubscribe_cancels_delivery():
    fan = FanoutService()
    sub = fan.subscribe(FARMER, Sink())
    await fan.unsubscribe(sub.sub_id)
    assert sub.task.cancelled() or sub.task.done()
    assert fan.dispatch(event()) == 0


@pytest.mark.asyncio
async def test_reconciled_change_reaches_both_parties_only(service, oracle):
    """PENDING -> FUNDED: farmer and buyer get exactly one FUNDED event, an unrelated buyer none."""
    service.orders.register(make_order("ord-x", 11))
    await settle(service)

    sinks = {s.viewer_id: Sink() for s in (FARMER, BUYER, OTHER)}
    for s in (FARMER, BUYER, OTHER):
        service.fanout.subscribe(s, sinks[s.viewer_id])

    oracle.set(11, S.FUNDED)
    service.reconciler.track("ord-x", 11)
    await service.reconciler.run_cycle()
    await settle(service)

    for v in ("u-farmer", "u-buyer"):
        assert [(e.order_id, e.new_status) for e in sinks[v].events] == [("ord-x", S.FUNDED)]
    assert sinks["u-other"].events == []
