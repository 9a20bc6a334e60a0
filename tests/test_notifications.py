# tests/test_notifications.py
from decimal import Decimal

import pytest

from conftest import make_order, settle
from ledger.enums import Actor, ChangeKind, ContractStatus as S
from ledger.models import ChangeEvent, OrderSnapshot
from ledger.services.notification_service import NotificationService, net_of_fee


def event(status, version=2, amount=Decimal("2")) -> ChangeEvent:
    o = make_order(status=status, version=version, amount=amount)
    return ChangeEvent(kind=ChangeKind.STATUS_CHANGED, order_id="ord-1", version=version,
                       new_status=status, actor=Actor.ORACLE_SYNC, ts=1, order=OrderSnapshot.from_order(o))


def test_net_of_fee():
    assert net_of_fee(Decimal("2"), Decimal("5")) == Decimal("1.9")


def test_funded_notifies_both_parties(notification_store):
    svc = NotificationService(notification_store)
    created = svc.handle(event(S.FUNDED))
    assert {(n.user_id, n.title) for n in created} == {("farmer-1", "Contract Funded"),
                                                       ("buyer-1", "Contract Funded")}


def test_delivery_notifies_buyer_with_deadline_hint(notification_store):
    [n] = NotificationService(notification_store).handle(event(S.DELIVERED))
    assert n.user_id == "buyer-1" and n.title == "Delivery Confirmed"
    assert "within 7 days" in n.message and n.data["contract_id"] == 1


def test_payment_released_is_net_of_platform_fee(notification_store):
    svc = NotificationService(notification_store, platform_fee_pct=Decimal("5"))
    created = svc.handle(event(S.COMPLETED, amount=Decimal("10")))
    farmer = next(n for n in created if n.user_id == "farmer-1")
    assert farmer.title == "Payment Released" and farmer.type == "payment"
    assert Decimal(farmer.data["amount_eth"]) == Decimal("9.5")


def test_duplicate_delivery_is_ignored_and_repeats_aggregate(notification_store):
    svc = NotificationService(notification_store)
    svc.handle(event(S.DISPUTED, version=2))
    assert svc.handle(event(S.DISPUTED, version=2)) == []
    # a second dispute on the same order while unread bumps the existing row
    [n, _] = svc.handle(event(S.DISPUTED, version=4))
    assert n.aggregate_count == 2
    assert len(svc.list_for_user("buyer-1")) == 1


def test_non_status_events_and_disabled_service(notification_store):
    svc = NotificationService(notification_store)
    created_ev = event(S.PENDING, version=1).model_copy(update={"kind": ChangeKind.CREATED})
    assert svc.handle(created_ev) == []
    assert NotificationService(notification_store, enabled=False).handle(event(S.CANCELLED)) == []


def test_mark_read_is_scoped_to_owner(notification_store):
    svc = NotificationService(notification_store)
    [n] = [x for x in svc.handle(event(S.CANCELLED)) if x.user_id == "buyer-1"]
    assert svc.unread_count("buyer-1") == 1
    assert svc.mark_read(n.id, "farmer-1") is False
    assert svc.mark_read(n.id, "buyer-1") is True
    assert svc.unread_count("buyer-1") == 0


@pytest.mark.asyncio
async def test_reconciled_status_produces_notifications(service, oracle):
    service.orders.register(make_order())
    oracle.set(1, S.FUNDED)
    service.reconciler.track("ord-1", 1)
    await service.reconciler.run_cycle()
    await settle(service)
    titles = [n.title for n in service.notifications.list_for_user("farmer-1")]
    assert titles == ["Contract Funded"]
