# ledger/idempotency.py
import time, uuid


def now_ms() -> int:
    """Wall-clock milliseconds (row timestamps, event ts)."""
    return int(time.time() * 1000)


def make_order_id(prefix: str = "ord") -> str:
    """Generate an order id for registrations that arrive without one."""
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


def make_subscription_id(viewer_id: str) -> str:
    return f"sub-{viewer_id}-{uuid.uuid4().hex[:8]}"
