# ledger/services/notification_service.py
from __future__ import annotations

from collections import OrderedDict
from decimal import Decimal
from typing import List, Optional, Tuple

from ledger.enums import ChangeKind, ContractStatus
from ledger.models import ChangeEvent, Notification
from ledger.stores.notification_store import NotificationStore
from utils.logger import logger

FARMER, BUYER, BOTH = "farmer", "buyer", "both"

# status -> [(who, title, message template, type)]
_RULES = {
    ContractStatus.FUNDED: [
        (FARMER, "Contract Funded", "Buyer funded contract #{cid}. You can start delivery.", "order"),
        (BUYER, "Contract Funded", "Your payment for contract #{cid} is held in escrow.", "payment"),
    ],
    ContractStatus.DELIVERED: [
        (BUYER, "Delivery Confirmed",
         "Farmer confirmed delivery for contract #{cid}. Please confirm receipt within 7 days.", "order"),
    ],
    ContractStatus.COMPLETED: [
        (FARMER, "Payment Released",
         "Payment for contract #{cid} has been released minus platform fee.", "payment"),
        (BUYER, "Contract Completed", "Contract #{cid} is completed. Transaction closed.", "order"),
    ],
    ContractStatus.DISPUTED: [
        (BOTH, "Dispute Raised", "A dispute was raised for contract #{cid}.", "dispute"),
    ],
    ContractStatus.RESOLVED: [
        (BOTH, "Dispute Resolved", "The dispute for contract #{cid} has been resolved.", "dispute"),
    ],
    ContractStatus.CANCELLED: [
        (BOTH, "Contract Cancelled", "Contract #{cid} was cancelled.", "order"),
    ],
}


def net_of_fee(amount: Decimal, fee_pct: Decimal) -> Decimal:
    return amount - amount * fee_pct / Decimal(100)


class NotificationService:
    """Turns status changes into per-party notifications."""

    def __init__(self, store: NotificationStore, *, platform_fee_pct: Decimal = Decimal("5"),
                 enabled: bool = True, seen_max: int = 10_000) -> None:
        self._store = store
        self._fee = Decimal(platform_fee_pct)
        self._enabled = enabled
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._seen_max = seen_max

    def _recipients(self, event: ChangeEvent, who: str) -> List[str]:
        o = event.order
        ids = {FARMER: [o.farmer_id], BUYER: [o.buyer_id], BOTH: [o.farmer_id, o.buyer_id]}[who]
        return [i for i in ids if i]

    def _first_time(self, key: str) -> bool:
        if key in self._seen:
            return False
        self._seen[key] = None
        if len(self._seen) > self._seen_max:
            self._seen.popitem(last=False)
        return True

    def plan(self, event: ChangeEvent) -> List[Tuple[str, str, str, str, dict]]:
        """(user_id, title, message, type, data) for one event; empty for non-status changes."""
        if event.kind != ChangeKind.STATUS_CHANGED:
            return []
        out = []
        cid = event.order.contract_id
        for who, title, tmpl, typ in _RULES.get(event.new_status, []):
            data = {"contract_id": cid, "status": event.new_status.value}
            if title == "Payment Released":
                data["amount_eth"] = str(net_of_fee(event.order.amount, self._fee))
            for uid in self._recipients(event, who):
                out.append((uid, title, tmpl.format(cid=cid), typ, data))
        return out

    def handle(self, event: ChangeEvent) -> List[Notification]:
        if not self._enabled or not self._first_time(event.key):
            return []
        created = [
            self._store.add(uid, event.order_id, title, message, type=typ, data=data)
            for uid, title, message, typ, data in self.plan(event)
        ]
        if created:
            logger.debug(f"[notify] {event.key}: {len(created)} notifications")
        return created

    async def on_change(self, event: ChangeEvent) -> None:
        """EventBus handler for TOPIC_ORDER_CHANGE."""
        self.handle(event)

    def list_for_user(self, user_id: str, *, unread_only: bool = False, limit: int = 50) -> List[Notification]:
        return self._store.list_for_user(user_id, unread_only=unread_only, limit=limit)

    def mark_read(self, notification_id: int, user_id: str) -> bool:
        return self._store.mark_read(notification_id, user_id)

    def unread_count(self, user_id: Optional[str]) -> int:
        if not user_id:
            return 0
        return len(self._store.list_for_user(user_id, unread_only=True, limit=1000))
