# ledger/stores/review_store.py
import sqlite3
from typing import List, Optional

from ledger.idempotency import now_ms
from ledger.models import ReviewItem


class ReviewStore:
    """
    Administrative review queue: orders the reconciler gave up on.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def flag(self, item: ReviewItem) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO review_queue (order_id, contract_id, reason, attempts, last_error, flagged_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (item.order_id, item.contract_id, item.reason, item.attempts,
                 item.last_error, item.flagged_at or now_ms()),
            )

    def get(self, order_id: str) -> Optional[ReviewItem]:
        row = self._conn.execute("SELECT * FROM review_queue WHERE order_id = ?", (order_id,)).fetchone()
        return ReviewItem(**dict(row)) if row else None

    def list(self) -> List[ReviewItem]:
        rows = self._conn.execute("SELECT * FROM review_queue ORDER BY flagged_at").fetchall()
        return [ReviewItem(**dict(r)) for r in rows]

    def release(self, order_id: str) -> Optional[ReviewItem]:
        item = self.get(order_id)
        if item is None:
            return None
        with self._conn:
            self._conn.execute("DELETE FROM review_queue WHERE order_id = ?", (order_id,))
        return item

    def __contains__(self, order_id: str) -> bool:
        return self.get(order_id) is not None
