from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paygate import ledger
from paygate.audit import AuditKind, record_audit
from paygate.config import Direction, OrderStatus
from paygate.errors import (
    GatewaySubmissionError,
    IdempotencyConflictError,
    MerchantInactiveError,
    MerchantNotFoundError,
    OrderNotFoundError,
)
from paygate.gateways.base import GatewayAdapter
from paygate.helpers import compute_fee, format_amount, generate_order_no, utcnow
from paygate.logging_config import get_logger
from paygate.models import Merchant, Order

logger = get_logger(__name__)


def get_active_merchant(db: Session, account_number: str) -> Merchant:
    merchant = db.query(Merchant).filter(Merchant.account_number == account_number).first()
    if merchant is None:
        raise MerchantNotFoundError("Merchant not found", merchant_id=account_number)
    if not merchant.is_active:
        raise MerchantInactiveError("Merchant is inactive", merchant_id=account_number)
    return merchant


def find_order(db: Session, order_no: str) -> Optional[Order]:
    return db.query(Order).filter(Order.order_no == order_no).first()


def get_order(db: Session, order_no: str) -> Order:
    order = find_order(db, order_no)
    if order is None:
        raise OrderNotFoundError("Order not found", order_no=order_no)
    return order


def find_gateway_order(db: Session, gateway_code: str, order_ref: str) -> Optional[Order]:
    """Map a gateway-echoed reference back to our order."""
    return (
        db.query(Order)
        .filter(Order.gateway_code == gateway_code)
        .filter(Order.order_no == order_ref)
        .first()
    )


def find_merchant_order(db: Session, merchant_id: int, merchant_order_no: str) -> Optional[Order]:
    return (
        db.query(Order)
        .filter(Order.merchant_id == merchant_id)
        .filter(Order.merchant_order_no == merchant_order_no)
        .first()
    )


def _ensure_same_request(existing: Order, direction: Direction, amount_cents: int) -> Order:
    if existing.direction != direction.value or existing.amount_cents != amount_cents:
        raise IdempotencyConflictError(
            "merchant order number already used for a different order",
            order_no=existing.order_no,
        )
    return existing


def _insert(db: Session, order: Order, reserve: bool) -> Tuple[Order, bool]:
    db.add(order)
    try:
        db.flush()
        if reserve:
            ledger.reserve_payout(db, order)
        db.commit()
    except IntegrityError:
        # Lost a race on (merchant_id, merchant_order_no).
        db.rollback()
        existing = find_merchant_order(db, order.merchant_id, order.merchant_order_no)
        if existing is None:
            raise
        return _ensure_same_request(existing, Direction(order.direction), order.amount_cents), False
    except Exception:
        db.rollback()
        raise
    return order, True


def create_payin(
    db: Session,
    merchant: Merchant,
    merchant_order_no: str,
    amount_cents: int,
    callback_url: Optional[str],
    gateway_code: str,
    large_payin_threshold_cents: Optional[int] = None,
) -> Tuple[Order, bool]:
    """
    Insert a pending pay-in, or return the existing one for a repeated
    ``merchant_order_no``. No ledger effect until the gateway reports success.
    """
    existing = find_merchant_order(db, merchant.id, merchant_order_no)
    if existing is not None:
        return _ensure_same_request(existing, Direction.PAYIN, amount_cents), False

    fee_cents = compute_fee(amount_cents, merchant.payin_fee_bps)
    order = Order(
        order_no=generate_order_no(Direction.PAYIN),
        merchant_order_no=merchant_order_no,
        merchant_id=merchant.id,
        direction=Direction.PAYIN.value,
        amount_cents=amount_cents,
        fee_cents=fee_cents,
        net_amount_cents=amount_cents - fee_cents,
        status=OrderStatus.PENDING.value,
        gateway_code=gateway_code,
        merchant_callback_url=callback_url or merchant.callback_url,
    )
    if large_payin_threshold_cents is not None and amount_cents >= large_payin_threshold_cents:
        record_audit(
            db,
            AuditKind.LARGE_PAYIN,
            f"merchant {merchant.account_number} created a large pay-in of {format_amount(amount_cents)}",
            order_no=order.order_no,
            gateway_code=gateway_code,
        )
    order, created = _insert(db, order, reserve=False)
    if created:
        logger.info(
            "Created pay-in orderNo=%s merchant=%s merchantOrderNo=%s amount=%s fee=%s",
            order.order_no,
            merchant.account_number,
            merchant_order_no,
            order.amount_cents,
            order.fee_cents,
        )
    return order, created


def create_payout(
    db: Session,
    merchant: Merchant,
    merchant_order_no: str,
    amount_cents: int,
    callback_url: Optional[str],
    gateway_code: str,
    account_number: str,
    account_name: str,
    bank_name: str,
    ifsc: Optional[str],
) -> Tuple[Order, bool]:
    """
    Insert a pending pay-out and reserve ``amount + fee`` in the same
    transaction. Raises ``InsufficientBalanceError`` without writing anything
    when the available balance cannot cover it.
    """
    existing = find_merchant_order(db, merchant.id, merchant_order_no)
    if existing is not None:
        return _ensure_same_request(existing, Direction.PAYOUT, amount_cents), False

    order = Order(
        order_no=generate_order_no(Direction.PAYOUT),
        merchant_order_no=merchant_order_no,
        merchant_id=merchant.id,
        direction=Direction.PAYOUT.value,
        amount_cents=amount_cents,
        fee_cents=compute_fee(amount_cents, merchant.payout_fee_bps),
        net_amount_cents=amount_cents,
        status=OrderStatus.PENDING.value,
        gateway_code=gateway_code,
        merchant_callback_url=callback_url or merchant.callback_url,
        account_number=account_number,
        account_name=account_name,
        bank_name=bank_name,
        ifsc=ifsc,
    )
    order, created = _insert(db, order, reserve=True)
    if created:
        logger.info(
            "Created pay-out orderNo=%s merchant=%s merchantOrderNo=%s amount=%s fee=%s reserved=%s",
            order.order_no,
            merchant.account_number,
            merchant_order_no,
            order.amount_cents,
            order.fee_cents,
            ledger.payout_total(order),
        )
    return order, created


def needs_submission(order: Order) -> bool:
    return order.submitted_at is None and order.status == OrderStatus.PENDING.value


async def submit_order(db: Session, order: Order, adapter: GatewayAdapter) -> Order:
    """
    Hand ``order`` to its gateway. A failure leaves the order pending (the
    external side may still have acted on it) and re-raises for the caller.
    """
    order.submit_attempts = (order.submit_attempts or 0) + 1
    try:
        result = await adapter.submit(order)
    except GatewaySubmissionError as exc:
        order.last_submit_error = exc.message[:500]
        record_audit(
            db,
            AuditKind.SUBMISSION_ERROR,
            exc.message,
            order_no=order.order_no,
            gateway_code=adapter.code,
            payload=exc.context or None,
        )
        db.commit()
        logger.warning(
            "Gateway submission failed orderNo=%s gateway=%s attempts=%s error=%s",
            order.order_no,
            adapter.code,
            order.submit_attempts,
            exc.message,
        )
        raise
    order.gateway_order_ref = result.external_ref
    order.payment_url = result.payment_url
    order.submitted_at = utcnow()
    order.last_submit_error = None
    db.commit()
    logger.info(
        "Submitted orderNo=%s gateway=%s gatewayRef=%s",
        order.order_no,
        adapter.code,
        result.external_ref,
    )
    return order
