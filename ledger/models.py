# ledger/models.py
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Optional, Dict, Any

from pydantic import BaseModel

from ledger.enums import ContractStatus, Actor, ChangeKind, ViewerRole


@dataclass
class Order:
    order_id: str
    contract_id: int
    status: ContractStatus                          # cached, display only
    farmer_id: Optional[str] = None
    buyer_id: Optional[str] = None
    is_buyer_initiated: bool = False

    crop_name: str = ""
    quantity: float = 0.0
    amount: Decimal = Decimal("0")                  # ETH
    delivery_start: Optional[str] = None            # ISO date
    delivery_end: Optional[str] = None

    authoritative_status: Optional[ContractStatus] = None   # last oracle answer
    created_at: int = 0                             # ms
    last_reconciled_at: Optional[int] = None        # ms
    version: int = 0

    def has_party(self, party_id: Optional[str]) -> bool:
        return bool(party_id) and party_id in (self.farmer_id, self.buyer_id)

    def parties_complete(self) -> bool:
        return bool(self.farmer_id and self.buyer_id)

    def with_changes(self, **kw) -> "Order":
        return replace(self, **kw)


@dataclass
class ContractDetails:
    """Normalized answer of the oracle's getContractDetails."""
    contract_id: int
    status: ContractStatus
    farmer_wallet: Optional[str] = None
    buyer_wallet: Optional[str] = None
    amount: Decimal = Decimal("0")
    advance_amount: Decimal = Decimal("0")
    remaining_amount: Decimal = Decimal("0")
    escrow_balance: Decimal = Decimal("0")
    start_date: Optional[int] = None                # unix seconds
    end_date: Optional[int] = None
    confirmation_deadline: Optional[int] = None
    farmer_confirmed_delivery: bool = False
    buyer_confirmed_receipt: bool = False
    is_buyer_initiated: bool = False
    raw: Optional[dict] = None


@dataclass(frozen=True)
class ViewerSession:
    """Explicit per-connection identity; passed into every call that needs it."""
    viewer_id: str
    role: ViewerRole
    party_id: Optional[str] = None                  # farmers.id / buyers.id

    @property
    def is_admin(self) -> bool:
        return self.role == ViewerRole.ADMIN

    def can_view(self, order: "Order") -> bool:
        return self.is_admin or order.has_party(self.party_id)


@dataclass
class ReviewItem:
    order_id: str
    contract_id: int
    reason: str
    attempts: int
    last_error: str = ""
    flagged_at: int = 0


@dataclass
class Notification:
    id: int
    user_id: str
    order_id: str
    title: str
    message: str
    type: str                                       # order | payment | dispute | system
    aggregate_count: int = 1
    read: bool = False
    created_at: int = 0
    data: Dict[str, Any] = field(default_factory=dict)


# ---- wire schemas -------------------------------------------------------------

class OrderSnapshot(BaseModel):
    order_id: str
    contract_id: int
    status: ContractStatus
    farmer_id: Optional[str] = None
    buyer_id: Optional[str] = None
    is_buyer_initiated: bool = False
    crop_name: str = ""
    quantity: float = 0.0
    amount: Decimal = Decimal("0")
    delivery_start: Optional[str] = None
    delivery_end: Optional[str] = None
    created_at: int = 0
    last_reconciled_at: Optional[int] = None
    version: int = 0

    @classmethod
    def from_order(cls, o: Order) -> "OrderSnapshot":
        return cls(
            order_id=o.order_id, contract_id=o.contract_id, status=o.status,
            farmer_id=o.farmer_id, buyer_id=o.buyer_id, is_buyer_initiated=o.is_buyer_initiated,
            crop_name=o.crop_name, quantity=o.quantity, amount=o.amount,
            delivery_start=o.delivery_start, delivery_end=o.delivery_end,
            created_at=o.created_at, last_reconciled_at=o.last_reconciled_at, version=o.version,
        )

    def to_order(self) -> Order:
        return Order(**self.model_dump())

    def has_party(self, party_id: Optional[str]) -> bool:
        return bool(party_id) and party_id in (self.farmer_id, self.buyer_id)


class ChangeEvent(BaseModel):
    """
    One logical change of an order row. `kind` tags the variant; `order`
    carries the row as written so subscribers never need a second lookup.
    """
    kind: ChangeKind
    order_id: str
    version: int
    old_status: Optional[ContractStatus] = None
    new_status: ContractStatus
    actor: Actor
    ts: int
    order: OrderSnapshot
    seq: Optional[int] = None                       # outbox sequence, set on publish

    @property
    def key(self) -> str:
        """Idempotency key: one order version is one logical change."""
        return f"{self.order_id}:{self.version}:{self.new_status.value}"
