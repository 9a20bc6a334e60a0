# tests/test_order_store.py
from decimal import Decimal

import pytest

from conftest import make_order
from ledger.enums import Actor, ChangeKind, ContractStatus as S
from ledger.errors import InvariantViolation, OrderNotFound, WriteConflict
from ledger.models import ReviewItem


def test_register_writes_row_and_created_event(order_store):
    ev = order_store.register(make_order(amount=Decimal("1.25")))
    assert ev.kind == ChangeKind.CREATED and ev.version == 1
    o = order_store.get("ord-1")
    assert o.status == S.PENDING and o.version == 1 and o.amount == Decimal("1.25")
    assert [e.kind for e in order_store.pending_events()] == [ChangeKind.CREATED]


def test_register_duplicate_contract_is_a_conflict(order_store):
    order_store.register(make_order())
    with pytest.raises(WriteConflict):
        order_store.register(make_order(order_id="ord-2"))


def test_get_unknown_order(order_store):
    assert order_store.find("nope") is None
    with pytest.raises(OrderNotFound):
        order_store.get("nope")


def test_apply_status_bumps_version_and_appends_outbox(order_store):
    order_store.register(make_order())
    ev = order_store.apply_status("ord-1", S.FUNDED, actor=Actor.ORACLE_SYNC,
                                  expected_version=1, authoritative=S.FUNDED)
    assert (ev.old_status, ev.new_status, ev.version, ev.actor) == (S.PENDING, S.FUNDED, 2, Actor.ORACLE_SYNC)
    assert ev.key == "ord-1:2:FUNDED"
    o = order_store.get("ord-1")
    assert o.authoritative_status == S.FUNDED and o.last_reconciled_at is not None
    assert order_store.outbox_backlog() == 2


def test_apply_status_with_stale_version_is_rejected(order_store):
    order_store.register(make_order())
    order_store.apply_status("ord-1", S.FUNDED, actor=Actor.ORACLE_SYNC, expected_version=1)
    with pytest.raises(WriteConflict):
        order_store.apply_status("ord-1", S.IN_PROGRESS, actor=Actor.ORACLE_SYNC, expected_version=1)
    assert order_store.get("ord-1").status == S.FUNDED


def test_parties_required_once_funded(order_store):
    order_store.register(make_order(buyer_id=None))
    with pytest.raises(InvariantViolation):
        order_store.apply_status("ord-1", S.FUNDED, actor=Actor.ORACLE_SYNC, expected_version=1)
    # cancelling a half-negotiated order is fine
    order_store.apply_status("ord-1", S.CANCELLED, actor=Actor.HUMAN, expected_version=1)
    assert order_store.outbox_backlog() == 2


def test_assign_parties(order_store):
    order_store.register(make_order(buyer_id=None))
    ev = order_store.assign_parties("ord-1", buyer_id="buyer-9")
    assert ev.kind == ChangeKind.PARTIES_CHANGED and ev.order.buyer_id == "buyer-9" and ev.version == 2
    assert order_store.assign_parties("ord-1", buyer_id="buyer-9") is None
    with pytest.raises(InvariantViolation):
        order_store.assign_parties("ord-1", buyer_id="buyer-other")


def test_touch_reconciled_does_not_emit(order_store):
    order_store.register(make_order())
    order_store.touch_reconciled("ord-1", S.PENDING)
    o = order_store.get("ord-1")
    assert o.version == 1 and o.last_reconciled_at is not None
    assert order_store.outbox_backlog() == 1


def test_outbox_drains_in_sequence(order_store):
    order_store.register(make_order())
    order_store.apply_status("ord-1", S.FUNDED, actor=Actor.ORACLE_SYNC, expected_version=1)
    pending = order_store.pending_events()
    assert [e.version for e in pending] == [1, 2]
    assert pending[0].seq < pending[1].seq
    order_store.ack_published([pending[0].seq])
    assert [e.version for e in order_store.pending_events()] == [2]
    assert order_store.outbox_backlog() == 1


def test_queries(order_store):
    order_store.register(make_order("a", 1, farmer_id="f1", buyer_id="b1"))
    order_store.register(make_order("b", 2, farmer_id="f2", buyer_id="b1"))
    order_store.register(make_order("c", 3, farmer_id="f1", buyer_id="b2"))
    order_store.apply_status("c", S.CANCELLED, actor=Actor.HUMAN, expected_version=1)
    assert {o.order_id for o in order_store.list_for_party("b1")} == {"a", "b"}
    assert {o.order_id for o in order_store.list_for_party("f1")} == {"a", "c"}
    assert {o.order_id for o in order_store.list_non_terminal()} == {"a", "b"}
    assert order_store.get_by_contract(2).order_id == "b"


def test_review_store_flag_and_release(review_store):
    review_store.flag(ReviewItem(order_id="x", contract_id=7, reason="retries exhausted", attempts=4,
                                 last_error="timeout"))
    assert "x" in review_store
    assert [i.order_id for i in review_store.list()] == ["x"]
    item = review_store.release("x")
    assert item.attempts == 4 and item.flagged_at > 0
    assert "x" not in review_store
    assert review_store.release("x") is None
