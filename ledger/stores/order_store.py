# ledger/stores/order_store.py
import sqlite3
from decimal import Decimal
from typing import Optional, List, Iterable

from ledger.enums import ContractStatus, Actor, ChangeKind
from ledger.errors import OrderNotFound, WriteConflict, InvariantViolation
from ledger.idempotency import now_ms
from ledger.models import Order, ChangeEvent, OrderSnapshot

# statuses allowed while a party reference is still missing
_PARTIES_OPTIONAL = frozenset({ContractStatus.PENDING, ContractStatus.CANCELLED})

_COLUMNS = (
    "order_id", "contract_id", "status", "authoritative_status", "farmer_id", "buyer_id",
    "is_buyer_initiated", "crop_name", "quantity", "amount", "delivery_start", "delivery_end",
    "created_at", "last_reconciled_at", "version",
)


def _row_to_order(row: sqlite3.Row) -> Order:
    auth = row["authoritative_status"]
    return Order(
        order_id=row["order_id"],
        contract_id=int(row["contract_id"]),
        status=ContractStatus(row["status"]),
        farmer_id=row["farmer_id"],
        buyer_id=row["buyer_id"],
        is_buyer_initiated=bool(row["is_buyer_initiated"]),
        crop_name=row["crop_name"],
        quantity=float(row["quantity"]),
        amount=Decimal(row["amount"]),
        delivery_start=row["delivery_start"],
        delivery_end=row["delivery_end"],
        authoritative_status=ContractStatus(auth) if auth else None,
        created_at=int(row["created_at"]),
        last_reconciled_at=row["last_reconciled_at"],
        version=int(row["version"]),
    )


class OrderStore:
    """
    Persisted order/contract table plus its transactional outbox.

    Every logical change (registration, status write, party assignment) bumps
    the row version and appends exactly one ChangeEvent to `change_outbox`
    in the same transaction; the ChangeFeedPublisher drains the outbox.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    # ---- reads --------------------------------------------------------------

    def find(self, order_id: str) -> Optional[Order]:
        row = self._conn.execute("SELECT * FROM orders WHERE order_id = ?", (order_id,)).fetchone()
        return _row_to_order(row) if row else None

    def get(self, order_id: str) -> Order:
        order = self.find(order_id)
        if order is None:
            raise OrderNotFound(f"unknown order {order_id}", order_id=order_id)
        return order

    def get_by_contract(self, contract_id: int) -> Optional[Order]:
        row = self._conn.execute("SELECT * FROM orders WHERE contract_id = ?", (int(contract_id),)).fetchone()
        return _row_to_order(row) if row else None

    def list_for_party(self, party_id: str) -> List[Order]:
        rows = self._conn.execute(
            "SELECT * FROM orders WHERE farmer_id = ? OR buyer_id = ? ORDER BY created_at DESC, order_id",
            (party_id, party_id),
        ).fetchall()
        return [_row_to_order(r) for r in rows]

    def list_all(self) -> List[Order]:
        rows = self._conn.execute("SELECT * FROM orders ORDER BY created_at DESC, order_id").fetchall()
        return [_row_to_order(r) for r in rows]

    def list_non_terminal(self) -> List[Order]:
        terminal = tuple(s.value for s in ContractStatus if s.is_terminal)
        marks = ",".join("?" * len(terminal))
        rows = self._conn.execute(
            f"SELECT * FROM orders WHERE status NOT IN ({marks}) ORDER BY created_at", terminal
        ).fetchall()
        return [_row_to_order(r) for r in rows]

    # ---- writes -------------------------------------------------------------

    def register(self, order: Order, *, actor: Actor = Actor.HUMAN) -> ChangeEvent:
        """Insert a new order row (version 1) and its CREATED event."""
        ts = now_ms()
        order = order.with_changes(version=1, created_at=order.created_at or ts)
        self._check_parties(order, order.status)
        values = (
            order.order_id, int(order.contract_id), order.status.value,
            order.authoritative_status.value if order.authoritative_status else None,
            order.farmer_id, order.buyer_id, int(order.is_buyer_initiated), order.crop_name,
            float(order.quantity), str(order.amount), order.delivery_start, order.delivery_end,
            order.created_at, order.last_reconciled_at, order.version,
        )
        event = self._event(ChangeKind.CREATED, order, None, actor, ts)
        try:
            with self._conn:
                self._conn.execute(
                    f"INSERT INTO orders ({','.join(_COLUMNS)}) VALUES ({','.join('?' * len(_COLUMNS))})",
                    values,
                )
                self._append_outbox(event)
        except sqlite3.IntegrityError as e:
            raise WriteConflict(f"order already registered: {e}", order_id=order.order_id,
                                contract_id=order.contract_id) from e
        return event

    def apply_status(self,
                     order_id: str,
                     new_status: ContractStatus,
                     *,
                     actor: Actor,
                     expected_version: int,
                     authoritative: Optional[ContractStatus] = None,
                     ) -> ChangeEvent:
        """Compare-and-set the cached status; raises WriteConflict on a stale version."""
        current = self.get(order_id)
        if current.version != expected_version:
            raise WriteConflict("stale version", order_id=order_id,
                                expected=expected_version, actual=current.version)
        self._check_parties(current, new_status)

        ts = now_ms()
        updated = current.with_changes(
            status=new_status,
            version=current.version + 1,
            authoritative_status=authoritative or current.authoritative_status,
            last_reconciled_at=ts if actor == Actor.ORACLE_SYNC else current.last_reconciled_at,
        )
        event = self._event(ChangeKind.STATUS_CHANGED, updated, current.status, actor, ts)
        with self._conn:
            cur = self._conn.execute(
                "UPDATE orders SET status = ?, authoritative_status = ?, last_reconciled_at = ?, version = ? "
                "WHERE order_id = ? AND version = ?",
                (
                    updated.status.value,
                    updated.authoritative_status.value if updated.authoritative_status else None,
                    updated.last_reconciled_at, updated.version, order_id, expected_version,
                ),
            )
            if cur.rowcount != 1:
                raise WriteConflict("concurrent write", order_id=order_id, expected=expected_version)
            self._append_outbox(event)
        return event

    def assign_parties(self,
                       order_id: str,
                       *,
                       farmer_id: Optional[str] = None,
                       buyer_id: Optional[str] = None,
                       expected_version: Optional[int] = None,
                       ) -> Optional[ChangeEvent]:
        """Fill in missing party references; returns None when nothing changed."""
        current = self.get(order_id)
        if expected_version is not None and current.version != expected_version:
            raise WriteConflict("stale version", order_id=order_id,
                                expected=expected_version, actual=current.version)
        for name, new, old in (("farmer_id", farmer_id, current.farmer_id),
                               ("buyer_id", buyer_id, current.buyer_id)):
            if new and old and new != old:
                raise InvariantViolation(f"{name} already set", order_id=order_id, current=old, requested=new)

        updated = current.with_changes(
            farmer_id=current.farmer_id or farmer_id,
            buyer_id=current.buyer_id or buyer_id,
        )
        if (updated.farmer_id, updated.buyer_id) == (current.farmer_id, current.buyer_id):
            return None
        updated = updated.with_changes(version=current.version + 1)
        ts = now_ms()
        event = self._event(ChangeKind.PARTIES_CHANGED, updated, current.status, Actor.HUMAN, ts)
        with self._conn:
            cur = self._conn.execute(
                "UPDATE orders SET farmer_id = ?, buyer_id = ?, version = ? WHERE order_id = ? AND version = ?",
                (updated.farmer_id, updated.buyer_id, updated.version, order_id, current.version),
            )
            if cur.rowcount != 1:
                raise WriteConflict("concurrent write", order_id=order_id, expected=current.version)
            self._append_outbox(event)
        return event

    def touch_reconciled(self, order_id: str, authoritative: ContractStatus) -> None:
        """Record a successful oracle read that produced no change (no event, no version bump)."""
        with self._conn:
            self._conn.execute(
                "UPDATE orders SET authoritative_status = ?, last_reconciled_at = ? WHERE order_id = ?",
                (authoritative.value, now_ms(), order_id),
            )

    # ---- outbox -------------------------------------------------------------

    def pending_events(self, limit: int = 500) -> List[ChangeEvent]:
        rows = self._conn.execute(
            "SELECT seq, payload FROM change_outbox ORDER BY seq LIMIT ?",
            (limit,),
        ).fetchall()
        out = []
        for r in rows:
            ev = ChangeEvent.model_validate_json(r["payload"])
            ev.seq = int(r["seq"])
            out.append(ev)
        return out

    def ack_published(self, seqs: Iterable[int]) -> None:
        """Drop rows the transport accepted; the outbox only holds undelivered events."""
        seqs = list(seqs)
        if not seqs:
            return
        with self._conn:
            self._conn.executemany("DELETE FROM change_outbox WHERE seq = ?", [(s,) for s in seqs])

    def outbox_backlog(self) -> int:
        return int(self._conn.execute(
            "SELECT COUNT(*) FROM change_outbox"
        ).fetchone()[0])

    # ---- internals ----------------------------------------------------------

    @staticmethod
    def _check_parties(order: Order, status: ContractStatus) -> None:
        if status not in _PARTIES_OPTIONAL and not order.parties_complete():
            raise InvariantViolation(
                f"both parties are required once {status.value}",
                order_id=order.order_id, farmer_id=order.farmer_id, buyer_id=order.buyer_id,
            )

    @staticmethod
    def _event(kind: ChangeKind, order: Order, old_status: Optional[ContractStatus],
               actor: Actor, ts: int) -> ChangeEvent:
        return ChangeEvent(
            kind=kind,
            order_id=order.order_id,
            version=order.version,
            old_status=old_status,
            new_status=order.status,
            actor=actor,
            ts=ts,
            order=OrderSnapshot.from_order(order),
        )

    def _append_outbox(self, event: ChangeEvent) -> None:
        self._conn.execute(
            "INSERT INTO change_outbox (order_id, payload, created_at) VALUES (?, ?, ?)",
            (event.order_id, event.model_dump_json(), event.ts),
        )

