# ledger/stores/notification_store.py
import json
import sqlite3
from typing import Any, Dict, List, Optional

from ledger.idempotency import now_ms
from ledger.models import Notification


def _row_to_notification(row: sqlite3.Row) -> Notification:
    return Notification(
        id=int(row["id"]),
        user_id=row["user_id"],
        order_id=row["order_id"],
        title=row["title"],
        message=row["message"],
        type=row["type"],
        aggregate_count=int(row["aggregate_count"]),
        read=bool(row["read"]),
        created_at=int(row["created_at"]),
        data=json.loads(row["data"] or "{}"),
    )


class NotificationStore:
    """
    Per-user notifications. An unread notification with the same
    (user, order, title) is bumped instead of duplicated.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def add(self, user_id: str, order_id: str, title: str, message: str,
            type: str = "order", data: Optional[Dict[str, Any]] = None) -> Notification:
        ts = now_ms()
        payload = json.dumps(data or {}, separators=(",", ":"), ensure_ascii=False)
        with self._conn:
            row = self._conn.execute(
                "SELECT id FROM notifications WHERE user_id = ? AND order_id = ? AND title = ? AND read = 0",
                (user_id, order_id, title),
            ).fetchone()
            if row:
                nid = int(row["id"])
                self._conn.execute(
                    "UPDATE notifications SET aggregate_count = aggregate_count + 1, message = ?, "
                    "data = ?, created_at = ? WHERE id = ?",
                    (message, payload, ts, nid),
                )
            else:
                cur = self._conn.execute(
                    "INSERT INTO notifications (user_id, order_id, title, message, type, created_at, data) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (user_id, order_id, title, message, type, ts, payload),
                )
                nid = int(cur.lastrowid)
        return self.get(nid)

    def get(self, notification_id: int) -> Notification:
        row = self._conn.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
        if row is None:
            raise KeyError(f"Unknown notification: {notification_id}")
        return _row_to_notification(row)

    def list_for_user(self, user_id: str, *, unread_only: bool = False, limit: int = 50) -> List[Notification]:
        sql = "SELECT * FROM notifications WHERE user_id = ?"
        if unread_only:
            sql += " AND read = 0"
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        rows = self._conn.execute(sql, (user_id, limit)).fetchall()
        return [_row_to_notification(r) for r in rows]

    def mark_read(self, notification_id: int, user_id: str) -> bool:
        with self._conn:
            cur = self._conn.execute(
                "UPDATE notifications SET read = 1 WHERE id = ? AND user_id = ?", (notification_id, user_id)
            )
        return cur.rowcount == 1
