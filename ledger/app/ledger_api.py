# ledger/app/ledger_api.py
from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from ledger.enums import Actor, ContractStatus, GatedAction, OrderTab, ReconcileOutcome, ViewerRole, can_transition
from ledger.errors import ActionNotAllowed, PermissionDenied
from ledger.idempotency import make_order_id
from ledger.models import ContractDetails, Order, ReviewItem, ViewerSession
from utils.logger import logger

_EITHER = (ViewerRole.FARMER, ViewerRole.BUYER)

# action -> (roles allowed, statuses allowed)
ACTION_RULES: Dict[GatedAction, tuple] = {
    GatedAction.CONFIRM_DELIVERY: ((ViewerRole.FARMER,), {ContractStatus.FUNDED, ContractStatus.IN_PROGRESS}),
    GatedAction.CONFIRM_RECEIPT: ((ViewerRole.BUYER,), {ContractStatus.DELIVERED}),
    GatedAction.CLAIM_REMAINING: ((ViewerRole.FARMER,), {ContractStatus.DELIVERED}),
    GatedAction.RAISE_DISPUTE: (_EITHER, {ContractStatus.FUNDED, ContractStatus.IN_PROGRESS,
                                          ContractStatus.DELIVERED}),
    GatedAction.CANCEL: (_EITHER, {ContractStatus.PENDING, ContractStatus.FUNDED, ContractStatus.IN_PROGRESS}),
}


@dataclass
class ActionDecision:
    order_id: str
    action: GatedAction
    verified_status: ContractStatus
    cached_status: ContractStatus
    details: ContractDetails


class LedgerAPI:
    """
    Application-facing API over the reconciliation core.
    Every call takes the viewer session explicitly; nothing reads ambient identity.
    """

    def __init__(self,
                 order_store,
                 review_store,
                 oracle,
                 reconciler,
                 publisher,
                 query,
                 notifications,
                 *,
                 wall_clock: Callable[[], float] = time.time,
                 ):
        self.orders = order_store
        self.review = review_store
        self.oracle = oracle
        self.reconciler = reconciler
        self.publisher = publisher
        self.query = query
        self.notifications = notifications
        self._wall_clock = wall_clock

    # ---- registration / parties ---------------------------------------------

    def register_order(self, session: ViewerSession, *,
                       contract_id: int,
                       crop_name: str = "",
                       quantity: float = 0.0,
                       amount: Decimal = Decimal("0"),
                       delivery_start: Optional[str] = None,
                       delivery_end: Optional[str] = None,
                       farmer_id: Optional[str] = None,
                       buyer_id: Optional[str] = None,
                       is_buyer_initiated: Optional[bool] = None,
                       order_id: Optional[str] = None) -> Order:
        """
        Record a freshly created contract as PENDING. Farmers open sell offers,
        buyers open buy requests; the opener is always one of the parties.
        """
        if session.role == ViewerRole.FARMER:
            if farmer_id and farmer_id != session.party_id:
                raise PermissionDenied("farmer can only register own offers", viewer_id=session.viewer_id)
            farmer_id, is_buyer_initiated = session.party_id, False
        elif session.role == ViewerRole.BUYER:
            if buyer_id and buyer_id != session.party_id:
                raise PermissionDenied("buyer can only register own requests", viewer_id=session.viewer_id)
            buyer_id, is_buyer_initiated = session.party_id, True
        order = Order(
            order_id=order_id or make_order_id(),
            contract_id=int(contract_id),
            status=ContractStatus.PENDING,
            farmer_id=farmer_id,
            buyer_id=buyer_id,
            is_buyer_initiated=bool(is_buyer_initiated),
            crop_name=crop_name,
            quantity=float(quantity),
            amount=Decimal(str(amount)),
            delivery_start=delivery_start,
            delivery_end=delivery_end,
        )
        event = self.orders.register(order)
        self.publisher.notify()
        self.reconciler.track(order.order_id, order.contract_id)
        logger.info(f"[api] registered {order.order_id} contract={order.contract_id} by {session.viewer_id}")
        return event.order.to_order()

    def assign_parties(self, session: ViewerSession, order_id: str, *,
                       farmer_id: Optional[str] = None, buyer_id: Optional[str] = None) -> Order:
        """Accepting an order fills in the caller's side; admins may fill either."""
        if session.role == ViewerRole.FARMER:
            if buyer_id or (farmer_id and farmer_id != session.party_id):
                raise PermissionDenied("farmer can only accept as itself", viewer_id=session.viewer_id)
            farmer_id = session.party_id
        elif session.role == ViewerRole.BUYER:
            if farmer_id or (buyer_id and buyer_id != session.party_id):
                raise PermissionDenied("buyer can only accept as itself", viewer_id=session.viewer_id)
            buyer_id = session.party_id
        event = self.orders.assign_parties(order_id, farmer_id=farmer_id, buyer_id=buyer_id)
        if event is None:
            return self.orders.get(order_id)
        self.publisher.notify()
        self.reconciler.mark_stale(order_id)
        return event.order.to_order()

    # ---- reads --------------------------------------------------------------

    def list_orders(self, session: ViewerSession, *, tab: OrderTab = OrderTab.CREATED,
                    status: Optional[str] = None) -> List[Order]:
        return self.query.list_orders(session, tab=tab, status=status)

    def get_order(self, session: ViewerSession, order_id: str) -> Order:
        return self.query.get_order(session, order_id)

    # ---- reconciliation triggers ----------------------------------------------

    async def refresh(self, session: ViewerSession, order_id: str, *, wait: bool = False) -> Order:
        """Flag an order stale; with wait=True reconcile it before returning."""
        self.query.get_order(session, order_id)
        self.reconciler.mark_stale(order_id)
        if wait:
            outcome = await self.reconciler.reconcile_one(order_id)
            logger.info(f"[api] refresh {order_id}: {outcome.value}")
        return self.orders.get(order_id)

    async def override_status(self, session: ViewerSession, order_id: str, new_status: ContractStatus,
                              *, reason: str = "") -> Order:
        """Admin correction; must follow a state-machine edge."""
        if not session.is_admin:
            raise PermissionDenied("admin only", viewer_id=session.viewer_id)
        async with self.reconciler.order_lock(order_id):
            current = self.orders.get(order_id)
            if not can_transition(current.status, new_status):
                raise ActionNotAllowed(f"illegal transition {current.status.value} -> {new_status.value}",
                                       order_id=order_id)
            event = self.orders.apply_status(order_id, new_status, actor=Actor.HUMAN,
                                             expected_version=current.version)
        self.publisher.notify()
        if new_status.is_terminal:
            self.reconciler.forget(order_id)
        else:
            self.reconciler.track(order_id, current.contract_id, delay=0.0)
        logger.warning(f"[api] admin override {order_id} {current.status.value} -> {new_status.value} "
                       f"by {session.viewer_id}: {reason or '-'}")
        return event.order.to_order()

    # ---- gated actions --------------------------------------------------------

    async def authorize_action(self, session: ViewerSession, order_id: str, action: GatedAction) -> ActionDecision:
        """
        Decide whether a party may perform a state-changing action. The decision
        uses a fresh oracle read, never the cached status. On success the order
        is flagged stale so the resulting chain change is picked up quickly.
        """
        order = self.query.get_order(session, order_id)
        roles, statuses = ACTION_RULES[action]
        if session.role not in roles:
            raise PermissionDenied(f"{session.role.value} cannot {action.value}", order_id=order_id)
        own = order.farmer_id if session.role == ViewerRole.FARMER else order.buyer_id
        if own != session.party_id:
            raise PermissionDenied(f"not the {session.role.value} of this order", order_id=order_id)

        details = await self.oracle.get_details(order.contract_id)
        if details.status not in statuses:
            raise ActionNotAllowed(f"{action.value} not allowed in {details.status.value}",
                                   order_id=order_id, cached=order.status.value)
        if action == GatedAction.CLAIM_REMAINING:
            deadline = details.confirmation_deadline
            if not deadline or self._wall_clock() < deadline:
                raise ActionNotAllowed("confirmation deadline not reached", order_id=order_id, deadline=deadline)

        self.reconciler.mark_stale(order_id)
        return ActionDecision(order_id, action, details.status, order.status, details)

    # ---- review queue ---------------------------------------------------------

    def list_review(self, session: ViewerSession) -> List[ReviewItem]:
        if not session.is_admin:
            raise PermissionDenied("admin only", viewer_id=session.viewer_id)
        return self.review.list()

    async def release_review(self, session: ViewerSession, order_id: str) -> ReconcileOutcome:
        """Put an escalated order back into the working set and try it once now."""
        if not session.is_admin:
            raise PermissionDenied("admin only", viewer_id=session.viewer_id)
        item = self.review.release(order_id)
        if item is None:
            raise ActionNotAllowed("order is not in the review queue", order_id=order_id)
        self.reconciler.track(order_id, item.contract_id)
        return await self.reconciler.reconcile_one(order_id)
