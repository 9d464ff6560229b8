import secrets
import string
import time
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from paygate.config import Direction, order_prefix_map, settings
from paygate.errors import ValidationError
from paygate.models import MerchantNotification, Order

CENT = Decimal("0.01")
_ORDER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def parse_amount(raw: Any) -> int:
    """
    Parse a merchant-supplied amount ("1000", "1000.5", 1000.50) into cents.
    """
    if raw is None or isinstance(raw, bool):
        raise ValidationError("amount is required")
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"invalid amount: {raw!r}") from exc
    if not value.is_finite() or value <= 0:
        raise ValidationError("amount must be positive")
    if value > settings.max_amount:
        raise ValidationError(f"amount exceeds the maximum of {settings.max_amount}")
    if value != value.quantize(CENT):
        raise ValidationError("amount supports at most two decimal places")
    return int(value * 100)


def format_amount(cents: int) -> str:
    return str((Decimal(cents) / 100).quantize(CENT))


def compute_fee(amount_cents: int, fee_bps: int) -> int:
    """Fee in cents for a rate in basis points, rounded half-up to the cent."""
    fee = (Decimal(amount_cents) * Decimal(fee_bps) / Decimal(10000)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(fee)


def generate_order_no(direction: Direction) -> str:
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(6))
    return f"{order_prefix_map[direction]}{int(time.time() * 1000)}{suffix}"


def serialize_order(order: Order) -> dict:
    return {
        "order_no": order.order_no,
        "merchant_order_no": order.merchant_order_no,
        "direction": order.direction,
        "amount": format_amount(order.amount_cents),
        "fee": format_amount(order.fee_cents),
        "net_amount": format_amount(order.net_amount_cents),
        "status": order.status,
        "gateway_code": order.gateway_code,
        "gateway_order_ref": order.gateway_order_ref,
        "payment_url": order.payment_url,
        "signature_verified": order.signature_verified,
        "needs_review": order.needs_review,
        "submitted": order.submitted_at is not None,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "finalized_at": order.finalized_at.isoformat() if order.finalized_at else None,
    }


def serialize_outbox(record: MerchantNotification) -> dict:
    return {
        "id": record.id,
        "orderId": record.order_id,
        "eventType": record.event_type,
        "targetUrl": record.target_url,
        "status": record.status,
        "attemptCount": record.attempt_count,
        "nextAttemptAt": record.next_attempt_at.isoformat() if record.next_attempt_at else None,
        "lastError": record.last_error,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
        "payload": record.payload,
    }
