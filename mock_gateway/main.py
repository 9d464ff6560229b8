import hashlib
import logging
import os
import secrets
from typing import List, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from sqlalchemy import Column, DateTime, Integer, String, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.sql import func

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("mock-gateway")

DB_URL = os.getenv("MOCK_GATEWAY_DB_URL", "sqlite:////data/gateway.db")
engine = create_engine(DB_URL, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

BONDPAY_API_KEY = os.getenv("BONDPAY_API_KEY", "change_me")
BONDPAY_PAYOUT_KEY = os.getenv("BONDPAY_PAYOUT_KEY", "change_me_payout")
LGPAY_API_KEY = os.getenv("LGPAY_API_KEY", "change_me_lg")
LGPAY_PAYOUT_KEY = os.getenv("LGPAY_PAYOUT_KEY", "") or LGPAY_API_KEY
PUBLIC_URL = os.getenv("MOCK_GATEWAY_PUBLIC_URL", "http://localhost:8001")

# Tests point this at the hub's ASGI app.
callback_transport: Optional[httpx.AsyncBaseTransport] = None

app = FastAPI(title="Mock Gateway")


class GatewayOrder(Base):
    __tablename__ = "gateway_orders"
    id = Column(Integer, primary_key=True)
    gateway = Column(String, nullable=False)  # bondpay|lgpay
    direction = Column(String, nullable=False)  # payin|payout
    order_ref = Column(String, index=True, nullable=False)
    gateway_order_no = Column(String, nullable=False)
    amount = Column(String, nullable=False)
    notify_url = Column(String, nullable=False)
    merchant_id = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")
    created_at = Column(DateTime(timezone=True), server_default=func.now())


Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _md5(message: str) -> str:
    return hashlib.md5(message.encode("utf-8")).hexdigest()


def _sorted_sign(params: dict, key: str) -> str:
    items = sorted((k, v) for k, v in params.items() if k != "sign" and v not in (None, ""))
    query = "&".join(f"{k}={v}" for k, v in items)
    return _md5(f"{query}&key={key}").upper()


def _serialize(order: GatewayOrder) -> dict:
    return {
        "gateway": order.gateway,
        "direction": order.direction,
        "orderRef": order.order_ref,
        "gatewayOrderNo": order.gateway_order_no,
        "amount": order.amount,
        "notifyUrl": order.notify_url,
        "status": order.status,
    }


def _store(db: Session, gateway: str, direction: str, order_ref: str, amount: str, notify_url: str, merchant_id=None):
    existing = (
        db.query(GatewayOrder)
        .filter(GatewayOrder.gateway == gateway)
        .filter(GatewayOrder.order_ref == order_ref)
        .first()
    )
    if existing:
        logger.info("Existing order found gateway=%s orderRef=%s, skipping new insert", gateway, order_ref)
        return existing
    order = GatewayOrder(
        gateway=gateway,
        direction=direction,
        order_ref=order_ref,
        gateway_order_no=f"{gateway[:2].upper()}{secrets.token_hex(6)}",
        amount=str(amount),
        notify_url=notify_url,
        merchant_id=merchant_id,
        status="pending",
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    logger.info("Stored gateway order gateway=%s direction=%s orderRef=%s", gateway, direction, order_ref)
    return order


def _find(db: Session, gateway: str, order_ref: str) -> GatewayOrder:
    order = (
        db.query(GatewayOrder)
        .filter(GatewayOrder.gateway == gateway)
        .filter(GatewayOrder.order_ref == order_ref)
        .first()
    )
    if not order:
        raise HTTPException(status_code=404, detail="order not found")
    return order


@app.post("/bondpay/v1/create")
async def bondpay_payin(request: Request, db: Session = Depends(get_db)):
    body = await request.json()
    expected = _md5(
        f"{body.get('merchant_id')}{body.get('amount')}{body.get('merchant_order_no')}{BONDPAY_API_KEY}{body.get('callback_url')}"
    )
    if body.get("signature") != expected:
        return {"status": "error", "message": "invalid signature"}
    order = _store(db, "bondpay", "payin", body["merchant_order_no"], body["amount"], body["callback_url"], body.get("merchant_id"))
    return {
        "status": "success",
        "orderNo": order.gateway_order_no,
        "payment_url": f"{PUBLIC_URL}/pay/{order.gateway_order_no}",
    }


@app.post("/bondpay/payout/payment.php")
async def bondpay_payout(request: Request, db: Session = Depends(get_db)):
    form = dict(await request.form())
    fields = ["account_number", "amount", "bank_name", "callback_url", "ifsc", "merchant_id", "name", "transaction_id"]
    expected = _md5("".join(str(form.get(f, "")) for f in fields) + BONDPAY_PAYOUT_KEY)
    if form.get("signature") != expected:
        return {"status": "error", "message": "invalid signature"}
    order = _store(db, "bondpay", "payout", form["transaction_id"], form["amount"], form["callback_url"], form.get("merchant_id"))
    return {"status": "success", "orderNo": order.gateway_order_no, "message": "accepted"}


@app.post("/bondpay/v1/query")
async def bondpay_query(request: Request, db: Session = Depends(get_db)):
    body = await request.json()
    order = _find(db, "bondpay", body.get("merchant_order_no", ""))
    return {"status": order.status, "orderNo": order.gateway_order_no, "amount": order.amount}


@app.post("/lgpay/api/order/create")
async def lgpay_payin(request: Request, db: Session = Depends(get_db)):
    form = dict(await request.form())
    if form.get("sign") != _sorted_sign(form, LGPAY_API_KEY):
        return {"status": 0, "msg": "sign error"}
    order = _store(db, "lgpay", "payin", form["order_sn"], form["money"], form["notify_url"], form.get("app_id"))
    return {
        "status": 1,
        "msg": "success",
        "data": {"order_no": order.gateway_order_no, "pay_url": f"{PUBLIC_URL}/pay/{order.gateway_order_no}"},
    }


@app.post("/lgpay/api/deposit/create")
async def lgpay_payout(request: Request, db: Session = Depends(get_db)):
    form = dict(await request.form())
    if form.get("sign") != _sorted_sign(form, LGPAY_PAYOUT_KEY):
        return {"status": 0, "msg": "sign error"}
    order = _store(db, "lgpay", "payout", form["order_sn"], form["money"], form["notify_url"], form.get("app_id"))
    return {"status": 1, "msg": "success", "data": {"order_no": order.gateway_order_no}}


@app.post("/lgpay/api/order/query")
async def lgpay_query(request: Request, db: Session = Depends(get_db)):
    form = dict(await request.form())
    order = _find(db, "lgpay", form.get("order_sn", ""))
    code = {"pending": 1, "success": 2, "failed": 3}.get(order.status, 1)
    return {"status": 1, "msg": order.status, "data": {"order_sn": order.order_ref, "status": code}}


def _callback_payload(order: GatewayOrder, status: str, sign_ok: bool) -> tuple[dict, bool]:
    """Returns the callback body and whether it goes out as JSON."""
    if order.gateway == "bondpay":
        if order.direction == "payin":
            payload = {
                "orderNo": order.gateway_order_no,
                "merchantOrder": order.order_ref,
                "status": status.lower(),
                "amount": order.amount,
            }
            key = BONDPAY_API_KEY
        else:
            payload = {
                "transaction_id": order.order_ref,
                "merchant_id": order.merchant_id,
                "status": status.upper(),
                "amount": order.amount,
            }
            key = BONDPAY_PAYOUT_KEY
        payload["sign"] = _md5(f"{order.order_ref}{order.amount}{key}") if sign_ok else "0" * 32
        return payload, True
    lg_status = {"success": "1", "failed": "0"}.get(status.lower(), status)
    payload = {
        "order_sn": order.order_ref,
        "order_no": order.gateway_order_no,
        "money": order.amount,
        "status": lg_status,
        "msg": status.lower(),
    }
    key = LGPAY_API_KEY if order.direction == "payin" else LGPAY_PAYOUT_KEY
    payload["sign"] = _sorted_sign(payload, key) if sign_ok else "0" * 32
    return payload, False


@app.post("/admin/settle/{gateway}/{order_ref}")
async def settle(gateway: str, order_ref: str, status: str = "success", sign_ok: bool = True, db: Session = Depends(get_db)):
    """
    Settle a sandbox order and fire its callback. ``status`` is sent as-is
    when it is neither success nor failed, to exercise unmapped statuses.
    """
    order = _find(db, gateway, order_ref)
    if status.lower() in ("success", "failed"):
        order.status = status.lower()
        db.add(order)
        db.commit()
    payload, as_json = _callback_payload(order, status, sign_ok)
    logger.info("Sending callback gateway=%s orderRef=%s status=%s", gateway, order_ref, status)
    try:
        async with httpx.AsyncClient(timeout=5.0, transport=callback_transport) as client:
            if as_json:
                response = await client.post(order.notify_url, json=payload)
            else:
                response = await client.post(order.notify_url, data=payload)
    except httpx.RequestError as exc:
        logger.warning("Failed to deliver callback gateway=%s orderRef=%s error=%r", gateway, order_ref, exc)
        return {"delivered": False, "payload": payload, "error": str(exc)}
    return {"delivered": True, "payload": payload, "responseStatus": response.status_code, "response": response.text}


@app.get("/orders")
async def list_orders(db: Session = Depends(get_db)):
    orders: List[GatewayOrder] = db.query(GatewayOrder).order_by(GatewayOrder.created_at).all()
    logger.info("Listing %s gateway orders", len(orders))
    return [_serialize(o) for o in orders]


@app.post("/admin/clear-db")
async def clear_db(db: Session = Depends(get_db)):
    """
    Dangerous: clears all sandbox gateway orders.
    """
    db.query(GatewayOrder).delete()
    db.commit()
    logger.warning("Cleared mock gateway orders via admin endpoint")
    return {"status": "cleared"}
