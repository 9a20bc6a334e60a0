# ledger/enums.py
from enum import Enum

from ledger.errors import UnknownStatusCode


class ContractStatus(str, Enum):
    PENDING = "PENDING"
    FUNDED = "FUNDED"
    IN_PROGRESS = "IN_PROGRESS"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"
    RESOLVED = "RESOLVED"

    @classmethod
    def from_code(cls, code) -> "ContractStatus":
        """Map the on-chain uint8 status to the enum; unknown codes are rejected."""
        try:
            return _BY_CODE[int(code)]
        except (KeyError, TypeError, ValueError):
            raise UnknownStatusCode(f"unknown on-chain status code {code!r}", code=code) from None

    @property
    def code(self) -> int:
        return _CODES[self]

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL

    @property
    def is_exception(self) -> bool:
        return self in EXCEPTION_BRANCH


# normal path, in lifecycle order
LIFECYCLE = (
    ContractStatus.PENDING,
    ContractStatus.FUNDED,
    ContractStatus.IN_PROGRESS,
    ContractStatus.DELIVERED,
    ContractStatus.COMPLETED,
)

TERMINAL = frozenset({ContractStatus.COMPLETED, ContractStatus.CANCELLED, ContractStatus.RESOLVED})
EXCEPTION_BRANCH = frozenset({ContractStatus.CANCELLED, ContractStatus.DISPUTED, ContractStatus.RESOLVED})

_CODES = {
    ContractStatus.PENDING: 0,
    ContractStatus.FUNDED: 1,
    ContractStatus.IN_PROGRESS: 2,
    ContractStatus.DELIVERED: 3,
    ContractStatus.COMPLETED: 4,
    ContractStatus.CANCELLED: 5,
    ContractStatus.DISPUTED: 6,
    ContractStatus.RESOLVED: 7,
}
_BY_CODE = {v: k for k, v in _CODES.items()}

# state machine edges (admin overrides and gated actions must follow these)
TRANSITIONS = {
    ContractStatus.PENDING: {ContractStatus.FUNDED, ContractStatus.CANCELLED},
    ContractStatus.FUNDED: {ContractStatus.IN_PROGRESS, ContractStatus.CANCELLED, ContractStatus.DISPUTED},
    ContractStatus.IN_PROGRESS: {ContractStatus.DELIVERED, ContractStatus.CANCELLED, ContractStatus.DISPUTED},
    ContractStatus.DELIVERED: {ContractStatus.COMPLETED, ContractStatus.DISPUTED},
    ContractStatus.DISPUTED: {ContractStatus.RESOLVED},
    ContractStatus.COMPLETED: set(),
    ContractStatus.CANCELLED: set(),
    ContractStatus.RESOLVED: set(),
}


def lifecycle_rank(status: ContractStatus) -> int:
    """Position on the normal path; exception states have no rank (-1)."""
    try:
        return LIFECYCLE.index(status)
    except ValueError:
        return -1


def can_transition(old: ContractStatus, new: ContractStatus) -> bool:
    return new in TRANSITIONS[old]


def accept_sync(cached: ContractStatus, authoritative: ContractStatus) -> bool:
    """
    Tie-break rule for oracle-driven writes.

    - terminal cached states absorb everything
    - CANCELLED / DISPUTED / RESOLVED are always accepted
    - otherwise the normal path must be non-decreasing (skips allowed),
      and a DISPUTED order can only leave through RESOLVED
    """
    if cached == authoritative:
        return False
    if cached.is_terminal:
        return False
    if authoritative.is_exception:
        return True
    if cached == ContractStatus.DISPUTED:
        return False
    return lifecycle_rank(authoritative) > lifecycle_rank(cached)


class Actor(str, Enum):
    ORACLE_SYNC = "oracle_sync"
    HUMAN = "human"


class ChangeKind(str, Enum):
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    PARTIES_CHANGED = "parties_changed"


class ViewerRole(str, Enum):
    FARMER = "farmer"
    BUYER = "buyer"
    ADMIN = "admin"


class OrderTab(str, Enum):
    CREATED = "created"
    ACCEPTED = "accepted"
    DELIVERED = "delivered"


class GatedAction(str, Enum):
    CONFIRM_DELIVERY = "confirm_delivery"
    CONFIRM_RECEIPT = "confirm_receipt"
    CLAIM_REMAINING = "claim_remaining"
    RAISE_DISPUTE = "raise_dispute"
    CANCEL = "cancel"


class ReconcileOutcome(str, Enum):
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    REJECTED = "rejected"
    UNAVAILABLE = "unavailable"
    ESCALATED = "escalated"
    SKIPPED = "skipped"
