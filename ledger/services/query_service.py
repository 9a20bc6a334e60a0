# ledger/services/query_service.py
from __future__ import annotations

from typing import List, Optional

from ledger.enums import ContractStatus, OrderTab, ViewerRole
from ledger.errors import PermissionDenied
from ledger.models import Order, OrderSnapshot, ViewerSession
from ledger.stores.order_store import OrderStore


def in_tab(order: Order, tab: OrderTab, role: ViewerRole) -> bool:
    """
    created  -> orders the viewer's side opened (farmer: sell offers, buyer: buy requests)
    accepted -> orders the other side opened and the viewer accepted
    delivered -> status DELIVERED, whoever opened it
    Admins see both sides in created/accepted.
    """
    if tab == OrderTab.DELIVERED:
        return order.status == ContractStatus.DELIVERED
    if role == ViewerRole.ADMIN:
        return True
    own_side = not order.is_buyer_initiated if role == ViewerRole.FARMER else order.is_buyer_initiated
    return own_side if tab == OrderTab.CREATED else not own_side


def status_filter(orders: List[Order], tab: OrderTab, status: Optional[str]) -> List[Order]:
    if tab == OrderTab.DELIVERED:
        return orders
    if not status or status.lower() == "all":
        return [o for o in orders if o.status != ContractStatus.DELIVERED]
    wanted = status.upper()
    return [o for o in orders if o.status.value == wanted]


class QueryService:
    """Read side for clients: the orders a viewer is a party to, by lifecycle tab and status."""

    def __init__(self, store: OrderStore) -> None:
        self._store = store

    def visible_orders(self, session: ViewerSession) -> List[Order]:
        if session.is_admin:
            return self._store.list_all()
        if not session.party_id:
            raise PermissionDenied("session has no party id", viewer_id=session.viewer_id)
        return self._store.list_for_party(session.party_id)

    def list_orders(self, session: ViewerSession, *, tab: OrderTab = OrderTab.CREATED,
                    status: Optional[str] = None) -> List[Order]:
        orders = [o for o in self.visible_orders(session) if in_tab(o, tab, session.role)]
        return status_filter(orders, tab, status)

    def get_order(self, session: ViewerSession, order_id: str) -> Order:
        order = self._store.get(order_id)
        if not session.can_view(order):
            raise PermissionDenied("not a party to this order", viewer_id=session.viewer_id, order_id=order_id)
        return order

    def snapshot(self, session: ViewerSession) -> List[OrderSnapshot]:
        """Full reload source for a projection."""
        return [OrderSnapshot.from_order(o) for o in self.visible_orders(session)]
