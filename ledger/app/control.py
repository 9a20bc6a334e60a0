# ledger/app/control.py
import asyncio
import contextlib
from dataclasses import asdict
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ledger.app.service import LedgerService
from ledger.enums import ContractStatus, GatedAction, OrderTab, ViewerRole
from ledger.errors import (
    LedgerError, PermissionDenied, OrderNotFound, ActionNotAllowed, WriteConflict,
    InvariantViolation, OracleUnavailable, UnknownStatusCode,
)
from ledger.models import ChangeEvent, Order, OrderSnapshot, ViewerSession
from utils.logger import logger

_HTTP_STATUS = {
    PermissionDenied: 403,
    OrderNotFound: 404,
    ActionNotAllowed: 409,
    WriteConflict: 409,
    InvariantViolation: 409,
    OracleUnavailable: 503,
    UnknownStatusCode: 503,
}

WS_POLICY_VIOLATION = 4403
WS_RESYNC = 4409


def _order_json(o: Order) -> Dict[str, Any]:
    return OrderSnapshot.from_order(o).model_dump(mode="json")


def _session_from(viewer_id: Optional[str], role: Optional[str], party_id: Optional[str]) -> ViewerSession:
    if not viewer_id or not role:
        raise PermissionDenied("missing viewer identity")
    try:
        r = ViewerRole(role.lower())
    except ValueError:
        raise PermissionDenied(f"unknown role {role!r}") from None
    return ViewerSession(viewer_id=viewer_id, role=r, party_id=party_id or None)


class RegisterReq(BaseModel):
    contract_id: int
    crop_name: str = ""
    quantity: float = 0.0
    amount: Decimal = Decimal("0")
    delivery_start: Optional[str] = None
    delivery_end: Optional[str] = None
    farmer_id: Optional[str] = None
    buyer_id: Optional[str] = None
    is_buyer_initiated: Optional[bool] = None
    order_id: Optional[str] = None


class PartiesReq(BaseModel):
    farmer_id: Optional[str] = None
    buyer_id: Optional[str] = None


class OverrideReq(BaseModel):
    status: ContractStatus
    reason: str = ""


def build_app(service: LedgerService, token: Optional[str] = None) -> FastAPI:
    app = FastAPI(title="agrisync ledger control")
    api = service.api

    def _auth(x_token: Optional[str]):
        if token and x_token != token:
            raise HTTPException(status_code=401, detail="unauthorized")

    def session(x_token: Optional[str] = Header(default=None),
                x_viewer_id: Optional[str] = Header(default=None),
                x_viewer_role: Optional[str] = Header(default=None),
                x_party_id: Optional[str] = Header(default=None)) -> ViewerSession:
        _auth(x_token)
        return _session_from(x_viewer_id, x_viewer_role, x_party_id)

    @app.exception_handler(LedgerError)
    async def _ledger_error(request: Request, exc: LedgerError):
        code = next((c for t, c in _HTTP_STATUS.items() if isinstance(exc, t)), 400)
        return JSONResponse(status_code=code, content={"error": type(exc).__name__, "detail": str(exc)})

    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    @app.get("/readyz")
    async def readyz():
        ok = await service.ready()
        return JSONResponse(status_code=200 if ok else 503, content={"ok": ok})

    @app.get("/status")
    async def get_status(x_token: Optional[str] = Header(default=None)):
        _auth(x_token)
        return service.status()

    # ---- orders ---------------------------------------------------------------

    @app.get("/orders")
    async def list_orders(tab: OrderTab = OrderTab.CREATED, status: str = "all",
                          s: ViewerSession = Depends(session)):
        return {"orders": [_order_json(o) for o in api.list_orders(s, tab=tab, status=status)]}

    @app.get("/orders/{order_id}")
    async def get_order(order_id: str, s: ViewerSession = Depends(session)):
        return _order_json(api.get_order(s, order_id))

    @app.post("/orders")
    async def register_order(req: RegisterReq, s: ViewerSession = Depends(session)):
        return _order_json(api.register_order(s, **req.model_dump()))

    @app.post("/orders/{order_id}/parties")
    async def assign_parties(order_id: str, req: PartiesReq, s: ViewerSession = Depends(session)):
        return _order_json(api.assign_parties(s, order_id, farmer_id=req.farmer_id, buyer_id=req.buyer_id))

    @app.post("/orders/{order_id}/refresh")
    async def refresh(order_id: str, wait: bool = False, s: ViewerSession = Depends(session)):
        return _order_json(await api.refresh(s, order_id, wait=wait))

    @app.post("/orders/{order_id}/override")
    async def override(order_id: str, req: OverrideReq, s: ViewerSession = Depends(session)):
        return _order_json(await api.override_status(s, order_id, req.status, reason=req.reason))

    @app.post("/orders/{order_id}/actions/{action}")
    async def authorize_action(order_id: str, action: GatedAction, s: ViewerSession = Depends(session)):
        d = await api.authorize_action(s, order_id, action)
        return {
            "allowed": True,
            "order_id": d.order_id,
            "action": d.action.value,
            "verified_status": d.verified_status.value,
            "cached_status": d.cached_status.value,
            "escrow_balance": str(d.details.escrow_balance),
            "confirmation_deadline": d.details.confirmation_deadline,
        }

    # ---- review queue ---------------------------------------------------------

    @app.get("/review")
    async def list_review(s: ViewerSession = Depends(session)):
        return {"items": [asdict(i) for i in api.list_review(s)]}

    @app.post("/review/{order_id}/release")
    async def release_review(order_id: str, s: ViewerSession = Depends(session)):
        outcome = await api.release_review(s, order_id)
        return {"order_id": order_id, "outcome": outcome.value}

    # ---- notifications --------------------------------------------------------

    @app.get("/notifications")
    async def list_notifications(unread_only: bool = False, limit: int = 50,
                                 s: ViewerSession = Depends(session)):
        if not s.party_id:
            raise PermissionDenied("session has no party id", viewer_id=s.viewer_id)
        items = service.notifications.list_for_user(s.party_id, unread_only=unread_only, limit=limit)
        return {"notifications": [asdict(n) for n in items]}

    @app.post("/notifications/{notification_id}/read")
    async def mark_read(notification_id: int, s: ViewerSession = Depends(session)):
        if not s.party_id or not service.notifications.mark_read(notification_id, s.party_id):
            raise HTTPException(status_code=404, detail="notification not found")
        return {"ok": True}

    # ---- live feed ------------------------------------------------------------

    @app.websocket("/ws")
    async def ws_feed(ws: WebSocket):
        """
        Snapshot on connect, then ChangeEvents for the viewer's orders.
        A dropped (lagging) subscriber is closed with 4409; the client
        reconnects and reloads.
        """
        q, h = ws.query_params, ws.headers
        if token and (q.get("token") or h.get("x-token")) != token:
            await ws.close(code=WS_POLICY_VIOLATION)
            return
        try:
            s = _session_from(q.get("viewer_id") or h.get("x-viewer-id"),
                              q.get("role") or h.get("x-viewer-role"),
                              q.get("party_id") or h.get("x-party-id"))
        except PermissionDenied:
            await ws.close(code=WS_POLICY_VIOLATION)
            return

        await ws.accept()
        ready = asyncio.Event()

        async def deliver(ev: ChangeEvent) -> None:
            await ready.wait()
            await ws.send_json({"type": "event", "event": ev.model_dump(mode="json")})

        try:
            sub = service.fanout.subscribe(s, deliver, party_id=q.get("subscribe_party"))
        except PermissionDenied as e:
            await ws.send_json({"type": "error", "detail": str(e)})
            await ws.close(code=WS_POLICY_VIOLATION)
            return

        async def send_snapshot() -> None:
            snap = [o.model_dump(mode="json") for o in service.query.snapshot(s)]
            await ws.send_json({"type": "snapshot", "orders": snap})

        recv: Optional[asyncio.Task] = None
        closed: Optional[asyncio.Task] = None
        try:
            await send_snapshot()
            ready.set()
            closed = asyncio.create_task(sub.closed.wait())
            while True:
                recv = asyncio.create_task(ws.receive_text())
                done, _ = await asyncio.wait({recv, closed}, return_when=asyncio.FIRST_COMPLETED)
                if closed in done:
                    await ws.close(code=WS_RESYNC, reason=sub.drop_reason or "resync")
                    return
                msg = recv.result()
                if msg == "ping":
                    await ws.send_json({"type": "pong"})
                elif msg == "reload":
                    await send_snapshot()
        except WebSocketDisconnect:
            pass
        finally:
            for t in (recv, closed):
                if t is not None and not t.done():
                    t.cancel()
                    with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
                        await t
            await service.fanout.unsubscribe(sub.sub_id)
            logger.debug(f"[ws] {s.viewer_id} disconnected")

    return app
