"""
Merchant balance mutations.

Every change is a relative delta applied with a guarded ``UPDATE`` so two
orders finalizing for the same merchant never lose each other's update, and
each applied effect is journaled once per ``(order, reason)``. Nothing here
commits; the caller's transaction decides.
"""
from enum import Enum
from typing import Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from paygate.config import Direction, OrderStatus
from paygate.errors import InsufficientBalanceError, LedgerInvariantError
from paygate.logging_config import get_logger
from paygate.models import LedgerEntry, Merchant, Order

logger = get_logger(__name__)


class LedgerReason(str, Enum):
    PAYOUT_RESERVE = "payout_reserve"
    PAYIN_CREDIT = "payin_credit"
    PAYOUT_SETTLE = "payout_settle"
    PAYOUT_RELEASE = "payout_release"


def payout_total(order: Order) -> int:
    return order.amount_cents + order.fee_cents


def deltas_for(order: Order, reason: LedgerReason) -> Tuple[int, int]:
    """(available_delta, frozen_delta) in cents for ``reason`` on ``order``."""
    if reason == LedgerReason.PAYIN_CREDIT:
        return order.net_amount_cents, 0
    total = payout_total(order)
    if reason == LedgerReason.PAYOUT_RESERVE:
        return -total, total
    if reason == LedgerReason.PAYOUT_SETTLE:
        return 0, -total
    if reason == LedgerReason.PAYOUT_RELEASE:
        return total, -total
    raise ValueError(f"unknown ledger reason {reason}")


def settlement_reason(order: Order, status: OrderStatus) -> Optional[LedgerReason]:
    """Ledger effect of moving ``order`` to the terminal ``status``, if any."""
    if order.direction == Direction.PAYIN.value:
        return LedgerReason.PAYIN_CREDIT if status == OrderStatus.SUCCESS else None
    if status == OrderStatus.SUCCESS:
        return LedgerReason.PAYOUT_SETTLE
    return LedgerReason.PAYOUT_RELEASE


def adjust_balance(db: Session, merchant_id: int, available_delta: int, frozen_delta: int) -> bool:
    """
    Apply both deltas in one statement. Returns False when a guard would
    take either balance below zero (nothing is written in that case).
    """
    stmt = update(Merchant).where(Merchant.id == merchant_id)
    if available_delta < 0:
        stmt = stmt.where(Merchant.available_balance_cents >= -available_delta)
    if frozen_delta < 0:
        stmt = stmt.where(Merchant.frozen_balance_cents >= -frozen_delta)
    stmt = stmt.values(
        available_balance_cents=Merchant.available_balance_cents + available_delta,
        frozen_balance_cents=Merchant.frozen_balance_cents + frozen_delta,
    ).execution_options(synchronize_session=False)
    result = db.execute(stmt)
    return result.rowcount == 1


def apply_effect(db: Session, order: Order, reason: LedgerReason) -> LedgerEntry:
    available_delta, frozen_delta = deltas_for(order, reason)
    if not adjust_balance(db, order.merchant_id, available_delta, frozen_delta):
        raise LedgerInvariantError(
            f"ledger guard rejected {reason.value} for order {order.order_no}",
            order_no=order.order_no,
            reason=reason.value,
        )
    entry = LedgerEntry(
        order_id=order.id,
        merchant_id=order.merchant_id,
        reason=reason.value,
        available_delta_cents=available_delta,
        frozen_delta_cents=frozen_delta,
    )
    db.add(entry)
    logger.info(
        "Ledger effect staged orderNo=%s reason=%s availableDelta=%s frozenDelta=%s",
        order.order_no,
        reason.value,
        available_delta,
        frozen_delta,
    )
    return entry


def reserve_payout(db: Session, order: Order) -> LedgerEntry:
    """
    Move ``amount + fee`` from available to frozen. ``order`` must already be
    flushed so it has an id.
    """
    try:
        return apply_effect(db, order, LedgerReason.PAYOUT_RESERVE)
    except LedgerInvariantError as exc:
        raise InsufficientBalanceError(
            "Insufficient balance",
            order_no=order.order_no,
            required_cents=payout_total(order),
        ) from exc


def balances(db: Session, merchant_id: int) -> Tuple[int, int]:
    merchant = db.get(Merchant, merchant_id, populate_existing=True)
    if merchant is None:
        raise LedgerInvariantError(f"merchant {merchant_id} does not exist")
    return merchant.available_balance_cents, merchant.frozen_balance_cents
