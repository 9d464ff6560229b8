import asyncio
import secrets
from contextlib import asynccontextmanager, suppress
from decimal import Decimal
from typing import Callable, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from paygate import database
from paygate.config import OrderStatus, settings
from paygate.database import SessionLocal, get_db
from paygate.errors import GatewayError, GatewaySubmissionError, OrderNotFoundError, PayGateError, SignatureError
from paygate.helpers import format_amount, parse_amount, serialize_order, serialize_outbox, utcnow
from paygate.logging_config import get_logger
from paygate.models import AuditEntry, Base, Merchant, MerchantNotification, Order
from paygate.orders import (
    create_payin,
    create_payout,
    get_active_merchant,
    get_order,
    needs_submission,
    submit_order,
)
from paygate.reconciliation import ReconcileOutcome, ReconciliationEngine
from paygate.schemas import (
    MerchantCreate,
    MerchantView,
    PayinData,
    PayinRequest,
    PayinResponse,
    PayoutData,
    PayoutRequest,
    PayoutResponse,
    ReconcileView,
    ResolveRequest,
    amount_text,
)
from paygate.security import (
    order_query_signature,
    payin_request_signature,
    payout_request_signature,
    require_bearer_token,
    signature_matches,
)
from paygate.webhooks import background_outbox_worker

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=database.engine)
    worker = None
    if settings.outbox_worker_enabled:
        logger.info("Starting merchant notification outbox worker")
        worker = asyncio.create_task(background_outbox_worker(SessionLocal))
    yield
    if worker is not None:
        worker.cancel()
        with suppress(asyncio.CancelledError):
            await worker


app = FastAPI(title="PayGate Reconciliation Hub", lifespan=lifespan)


def get_engine() -> ReconciliationEngine:
    # One settings snapshot per request; nothing re-reads config mid-transaction.
    return ReconciliationEngine(settings.model_copy())


def _envelope(code: int, message: str, **extra) -> dict:
    return {"code": code, "message": message, "success": False, **extra}


@app.exception_handler(PayGateError)
async def paygate_error_handler(request: Request, exc: PayGateError):
    logger.warning("Request failed path=%s code=%s message=%s", request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=_envelope(exc.status_code, exc.message))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [{"loc": [str(part) for part in e.get("loc", ())], "msg": e.get("msg")} for e in exc.errors()]
    missing = any(e.get("type") == "missing" for e in exc.errors())
    message = "Missing required parameters" if missing else "Invalid parameters"
    return JSONResponse(status_code=400, content=_envelope(400, message, errors=errors))


def _payin_data(order: Order) -> PayinData:
    return PayinData(
        order_no=order.order_no,
        merchant_order_no=order.merchant_order_no,
        amount=format_amount(order.amount_cents),
        fee=format_amount(order.fee_cents),
        net_amount=format_amount(order.net_amount_cents),
        payment_url=order.payment_url,
        status=order.status,
    )


def _payout_data(order: Order) -> PayoutData:
    return PayoutData(
        order_no=order.order_no,
        merchant_order_no=order.merchant_order_no,
        amount=format_amount(order.amount_cents),
        fee=format_amount(order.fee_cents),
        total_amount=format_amount(order.amount_cents + order.fee_cents),
        status=order.status,
    )


async def _submit_or_report(
    db: Session,
    order: Order,
    engine: ReconciliationEngine,
    render: Callable[[Order], object],
) -> Optional[JSONResponse]:
    """
    Submit an order that has not reached its gateway yet. A failure is
    reported as retryable with the pending order attached.
    """
    if not needs_submission(order):
        return None
    try:
        await submit_order(db, order, engine.adapter(order.gateway_code))
    except GatewaySubmissionError as exc:
        return JSONResponse(
            status_code=502,
            content=_envelope(
                502,
                f"Gateway unavailable, order kept pending: {exc.message}",
                retryable=True,
                data=render(order).model_dump(),
            ),
        )
    return None


@app.post("/api/payin", response_model=PayinResponse)
async def payin(
    request: PayinRequest,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
):
    logger.info(
        "Payin request received merchant=%s merchantOrderNo=%s amount=%s",
        request.merchant_id,
        request.merchant_order_no,
        request.amount,
    )
    merchant = get_active_merchant(db, request.merchant_id)
    expected = payin_request_signature(
        request.merchant_id,
        amount_text(request.amount),
        request.merchant_order_no,
        merchant.api_key,
        request.callback_url or "",
    )
    if not signature_matches(expected, request.sign):
        raise SignatureError("Invalid signature", merchant_id=request.merchant_id)
    order, _ = create_payin(
        db,
        merchant,
        request.merchant_order_no,
        parse_amount(request.amount),
        request.callback_url,
        merchant.gateway_code or engine.settings.default_gateway_code,
        large_payin_threshold_cents=engine.settings.large_payin_threshold * 100,
    )
    failure = await _submit_or_report(db, order, engine, _payin_data)
    if failure is not None:
        return failure
    return PayinResponse(data=_payin_data(order))


@app.post("/api/payout", response_model=PayoutResponse)
async def payout(
    request: PayoutRequest,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
):
    logger.info(
        "Payout request received merchant=%s transactionId=%s amount=%s",
        request.merchant_id,
        request.transaction_id,
        request.amount,
    )
    merchant = get_active_merchant(db, request.merchant_id)
    expected = payout_request_signature(
        request.account_number,
        amount_text(request.amount),
        request.bank_name,
        request.callback_url or "",
        request.ifsc,
        request.merchant_id,
        request.name,
        request.transaction_id,
        merchant.payout_key,
    )
    if not signature_matches(expected, request.sign):
        raise SignatureError("Invalid signature", merchant_id=request.merchant_id)
    order, _ = create_payout(
        db,
        merchant,
        request.transaction_id,
        parse_amount(request.amount),
        request.callback_url,
        merchant.gateway_code or engine.settings.default_gateway_code,
        account_number=request.account_number,
        account_name=request.name,
        bank_name=request.bank_name,
        ifsc=request.ifsc,
    )
    failure = await _submit_or_report(db, order, engine, _payout_data)
    if failure is not None:
        return failure
    return PayoutResponse(data=_payout_data(order))


@app.get("/api/orders/{order_no}")
async def merchant_order_status(
    order_no: str,
    merchant_id: str = Query(..., min_length=1),
    sign: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
):
    merchant = get_active_merchant(db, merchant_id)
    if not signature_matches(order_query_signature(merchant_id, order_no, merchant.api_key), sign):
        raise SignatureError("Invalid signature", merchant_id=merchant_id)
    order = get_order(db, order_no)
    if order.merchant_id != merchant.id:
        raise OrderNotFoundError("Order not found", order_no=order_no)
    return {"code": 200, "message": "Success", "success": True, "data": serialize_order(order)}


@app.post("/callbacks/{gateway_code}")
async def gateway_callback(
    gateway_code: str,
    request: Request,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
):
    try:
        adapter = engine.adapter(gateway_code)
    except GatewayError:
        raise HTTPException(status_code=404, detail="unknown gateway")
    payload = await _read_callback_body(request)
    logger.info("Callback received gateway=%s payload=%s", gateway_code, payload)
    outcome = engine.handle_callback(db, gateway_code, payload)
    logger.info(
        "Callback handled gateway=%s result=%s orderNo=%s status=%s",
        gateway_code,
        outcome.result.value,
        outcome.order_no,
        outcome.status,
    )
    ack = adapter.acknowledgment()
    return Response(content=ack.content, media_type=ack.media_type)


async def _read_callback_body(request: Request) -> dict:
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {"_raw": body}
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def _reconcile_view(outcome: ReconcileOutcome) -> ReconcileView:
    return ReconcileView(
        result=outcome.result.value,
        order_no=outcome.order_no,
        status=outcome.status,
        detail=outcome.detail,
    )


def _merchant_view(merchant: Merchant) -> MerchantView:
    return MerchantView(
        account_number=merchant.account_number,
        merchant_name=merchant.merchant_name,
        api_key=merchant.api_key,
        payout_key=merchant.payout_key,
        payin_fee_bps=merchant.payin_fee_bps,
        payout_fee_bps=merchant.payout_fee_bps,
        gateway_code=merchant.gateway_code,
        available_balance=format_amount(merchant.available_balance_cents),
        frozen_balance=format_amount(merchant.frozen_balance_cents),
        is_active=merchant.is_active,
    )


def _percent_to_bps(percent: Decimal) -> int:
    return int((percent * 100).to_integral_value())


@app.post("/admin/merchants", response_model=MerchantView)
async def create_merchant(
    request: MerchantCreate,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    if request.gateway_code and settings.gateway(request.gateway_code) is None:
        raise HTTPException(status_code=422, detail="unknown gateway")
    account_number = request.account_number or f"M{secrets.randbelow(10**9):09d}"
    if db.query(Merchant).filter(Merchant.account_number == account_number).first():
        raise HTTPException(status_code=409, detail="account number already exists")
    merchant = Merchant(
        account_number=account_number,
        merchant_name=request.merchant_name,
        api_key=secrets.token_hex(16),
        payout_key=secrets.token_hex(16),
        payin_fee_bps=_percent_to_bps(request.payin_fee_percent),
        payout_fee_bps=_percent_to_bps(request.payout_fee_percent),
        gateway_code=request.gateway_code,
        callback_url=request.callback_url,
        is_active=True,
        available_balance_cents=parse_amount(request.opening_balance) if request.opening_balance else 0,
        frozen_balance_cents=0,
    )
    db.add(merchant)
    db.commit()
    db.refresh(merchant)
    logger.info("Created merchant account=%s gateway=%s", account_number, merchant.gateway_code)
    return _merchant_view(merchant)


@app.get("/admin/merchants/{account_number}", response_model=MerchantView)
async def merchant_detail(account_number: str, _auth=Depends(require_bearer_token), db: Session = Depends(get_db)):
    merchant = db.query(Merchant).filter(Merchant.account_number == account_number).first()
    if merchant is None:
        raise HTTPException(status_code=404, detail="merchant not found")
    return _merchant_view(merchant)


@app.get("/admin/orders/{order_no}")
async def order_detail(order_no: str, _auth=Depends(require_bearer_token), db: Session = Depends(get_db)):
    order = get_order(db, order_no)
    body = serialize_order(order)
    body["callback_payload"] = order.callback_payload
    body["last_submit_error"] = order.last_submit_error
    return body


@app.post("/admin/orders/{order_no}/query", response_model=ReconcileView)
async def query_order(
    order_no: str,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
):
    return _reconcile_view(await engine.reconcile_by_query(db, order_no))


@app.post("/admin/orders/{order_no}/resolve", response_model=ReconcileView)
async def resolve_order(
    order_no: str,
    request: ResolveRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
):
    outcome = engine.resolve_manually(db, order_no, OrderStatus(request.status), request.note)
    return _reconcile_view(outcome)


@app.get("/admin/audit")
async def list_audit(
    kind: str | None = None,
    order_no: str | None = None,
    limit: int = Query(100, ge=1, le=500),
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    query = db.query(AuditEntry)
    if kind:
        query = query.filter(AuditEntry.kind == kind)
    if order_no:
        query = query.filter(AuditEntry.order_no == order_no)
    records = query.order_by(AuditEntry.id.desc()).limit(limit).all()
    return [
        {
            "id": r.id,
            "kind": r.kind,
            "orderNo": r.order_no,
            "gatewayCode": r.gateway_code,
            "detail": r.detail,
            "payload": r.payload,
            "createdAt": r.created_at.isoformat() if r.created_at else None,
        }
        for r in records
    ]


@app.get("/webhooks/outbox")
async def list_outbox(
    status: str | None = None,
    limit: int = Query(100, ge=1, le=500),
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    query = db.query(MerchantNotification)
    if status:
        query = query.filter(MerchantNotification.status == status)
    records = query.order_by(MerchantNotification.id.desc()).limit(limit).all()
    return [serialize_outbox(r) for r in records]


@app.post("/admin/replay/{record_id}")
async def force_replay(record_id: int, _auth=Depends(require_bearer_token), db: Session = Depends(get_db)):
    """
    Put a failed or rejected merchant notification back in the queue.
    """
    record = db.get(MerchantNotification, record_id)
    if not record:
        raise HTTPException(status_code=404, detail="outbox record not found")
    record.status = "pending"
    record.last_error = None
    record.next_attempt_at = utcnow()
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("Forced replay for outbox record_id=%s", record_id)
    return serialize_outbox(record)


@app.get("/health")
async def health():
    return {"status": "ok"}
