# tests/test_ledger_api.py
import asyncio
from decimal import Decimal

import pytest

from conftest import make_order, settle
from ledger.enums import Actor, ChangeKind, ContractStatus as S, GatedAction, ReconcileOutcome, ViewerRole
from ledger.errors import ActionNotAllowed, OracleUnavailable, PermissionDenied
from ledger.event_bus import TOPIC_ORDER_CHANGE
from ledger.models import ReviewItem, ViewerSession

FARMER = ViewerSession("u-f", ViewerRole.FARMER, "farmer-1")
BUYER = ViewerSession("u-b", ViewerRole.BUYER, "buyer-1")
OTHER_BUYER = ViewerSession("u-b2", ViewerRole.BUYER, "buyer-2")
ADMIN = ViewerSession("u-a", ViewerRole.ADMIN)


@pytest.mark.asyncio
async def test_register_and_accept(service):
    api = service.api
    o = api.register_order(FARMER, contract_id=5, crop_name="cassava", quantity=3, amount=Decimal("1.5"))
    assert o.farmer_id == "farmer-1" and o.buyer_id is None and not o.is_buyer_initiated
    assert o.status == S.PENDING and service.reconciler.is_tracked(o.order_id)

    with pytest.raises(PermissionDenied):
        api.assign_parties(BUYER, o.order_id, farmer_id="farmer-9")
    o = api.assign_parties(BUYER, o.order_id)
    assert o.buyer_id == "buyer-1" and o.version == 2

    await settle(service)
    assert service.orders.outbox_backlog() == 0


@pytest.mark.asyncio
async def test_register_rejects_someone_elses_identity(service):
    with pytest.raises(PermissionDenied):
        service.api.register_order(BUYER, contract_id=6, buyer_id="buyer-2")
    o = service.api.register_order(BUYER, contract_id=6)
    assert o.is_buyer_initiated and o.buyer_id == "buyer-1"


@pytest.mark.asyncio
async def test_refresh_with_wait_reconciles_now(service, oracle):
    service.orders.register(make_order())
    oracle.set(1, S.IN_PROGRESS)
    o = await service.api.refresh(BUYER, "ord-1", wait=True)
    assert o.status == S.IN_PROGRESS
    with pytest.raises(PermissionDenied):
        await service.api.refresh(OTHER_BUYER, "ord-1")


@pytest.mark.asyncio
async def test_admin_override_follows_state_machine(service):
    seen = []
    service.bus.subscribe(TOPIC_ORDER_CHANGE, seen.append)
    service.orders.register(make_order(status=S.DELIVERED))
    with pytest.raises(PermissionDenied):
        await service.api.override_status(BUYER, "ord-1", S.DISPUTED)
    with pytest.raises(ActionNotAllowed):
        await service.api.override_status(ADMIN, "ord-1", S.CANCELLED)

    o = await service.api.override_status(ADMIN, "ord-1", S.DISPUTED, reason="buyer complaint")
    assert o.status == S.DISPUTED
    await settle(service)
    assert [(e.kind, e.actor) for e in seen] == [(ChangeKind.CREATED, Actor.HUMAN),
                                                 (ChangeKind.STATUS_CHANGED, Actor.HUMAN)]


@pytest.mark.asyncio
async def test_override_to_terminal_stops_polling(service, oracle):
    service.orders.register(make_order(status=S.FUNDED))
    service.reconciler.track("ord-1", 1)
    # chain still says FUNDED, the admin knows better
    oracle.set(1, S.FUNDED)

    await service.api.override_status(ADMIN, "ord-1", S.CANCELLED, reason="off-chain refund")
    assert not service.reconciler.is_tracked("ord-1")
    assert await service.reconciler.run_cycle() == {}
    assert oracle.calls == [] and service.reconciler.stats["alerts"] == 0


@pytest.mark.asyncio
async def test_stop_right_after_a_write_returns(service):
    service.api.register_order(FARMER, contract_id=9)
    await asyncio.wait_for(service.stop(), timeout=5)


@pytest.mark.asyncio
async def test_gated_action_uses_oracle_not_cache(service, oracle):
    service.orders.register(make_order(status=S.FUNDED))
    # cache says FUNDED, chain already moved on
    oracle.set(1, S.DELIVERED)
    with pytest.raises(ActionNotAllowed):
        await service.api.authorize_action(FARMER, "ord-1", GatedAction.CONFIRM_DELIVERY)

    d = await service.api.authorize_action(BUYER, "ord-1", GatedAction.CONFIRM_RECEIPT)
    assert d.verified_status == S.DELIVERED and d.cached_status == S.FUNDED
    assert service.reconciler.is_tracked("ord-1")


@pytest.mark.asyncio
async def test_gated_action_role_and_party_checks(service, oracle):
    service.orders.register(make_order(status=S.DELIVERED))
    oracle.set(1, S.DELIVERED)
    with pytest.raises(PermissionDenied):
        await service.api.authorize_action(FARMER, "ord-1", GatedAction.CONFIRM_RECEIPT)
    with pytest.raises(PermissionDenied):
        await service.api.authorize_action(OTHER_BUYER, "ord-1", GatedAction.RAISE_DISPUTE)
    with pytest.raises(PermissionDenied):
        await service.api.authorize_action(ADMIN, "ord-1", GatedAction.CANCEL)
    d = await service.api.authorize_action(BUYER, "ord-1", GatedAction.RAISE_DISPUTE)
    assert d.verified_status == S.DELIVERED


@pytest.mark.asyncio
async def test_claim_remaining_waits_for_deadline(service, oracle):
    api = service.api
    service.orders.register(make_order(status=S.DELIVERED))
    oracle.set(1, S.DELIVERED, confirmation_deadline=2_000_000_000)

    api._wall_clock = lambda: 1_999_999_999
    with pytest.raises(ActionNotAllowed):
        await api.authorize_action(FARMER, "ord-1", GatedAction.CLAIM_REMAINING)
    api._wall_clock = lambda: 2_000_000_000
    d = await api.authorize_action(FARMER, "ord-1", GatedAction.CLAIM_REMAINING)
    assert d.details.confirmation_deadline == 2_000_000_000


@pytest.mark.asyncio
async def test_gated_action_surfaces_oracle_outage(service, oracle):
    service.orders.register(make_order(status=S.FUNDED))
    oracle.script(1, OracleUnavailable("timeout"))
    with pytest.raises(OracleUnavailable):
        await service.api.authorize_action(FARMER, "ord-1", GatedAction.CANCEL)


@pytest.mark.asyncio
async def test_review_release_puts_order_back(service, oracle):
    service.orders.register(make_order())
    service.review.flag(ReviewItem(order_id="ord-1", contract_id=1, reason="retries exhausted", attempts=6))
    oracle.set(1, S.FUNDED)

    with pytest.raises(PermissionDenied):
        service.api.list_review(BUYER)
    assert [i.order_id for i in service.api.list_review(ADMIN)] == ["ord-1"]

    assert await service.api.release_review(ADMIN, "ord-1") == ReconcileOutcome.UPDATED
    assert service.api.list_review(ADMIN) == []
    assert service.orders.get("ord-1").status == S.FUNDED
    with pytest.raises(ActionNotAllowed):
        await service.api.release_review(ADMIN, "ord-1")
