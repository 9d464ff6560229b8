"""
Order state machine: ``pending -> success`` or ``pending -> failed``, nothing else.

Callbacks, status queries and operator resolutions all end in
:meth:`ReconciliationEngine.finalize`, which flips the status with a
conditional update keyed on ``status = 'pending'`` and applies the ledger
effect in the same transaction. Whoever loses that race sees zero rows
updated and treats the event as a duplicate, so an effect is applied at most
once however many deliveries arrive.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from paygate import ledger
from paygate.audit import AuditKind, record_audit
from paygate.config import OrderStatus, Settings
from paygate.errors import CallbackFormatError, GatewayQueryError
from paygate.gateways import AdapterFactory, adapter_factory
from paygate.gateways.base import GatewayAdapter
from paygate.helpers import utcnow
from paygate.logging_config import get_logger
from paygate.models import Order
from paygate.orders import find_gateway_order, get_order
from paygate.webhooks import enqueue_merchant_notification

logger = get_logger(__name__)


class ReconcileResult(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNKNOWN_ORDER = "unknown_order"
    AMBIGUOUS = "ambiguous"
    MALFORMED = "malformed"
    STILL_PENDING = "still_pending"
    QUERY_FAILED = "query_failed"


@dataclass
class ReconcileOutcome:
    result: ReconcileResult
    order_no: Optional[str] = None
    status: Optional[str] = None
    detail: str = ""


class ReconciliationEngine:
    def __init__(self, settings: Settings, adapters: Optional[AdapterFactory] = None):
        self.settings = settings
        self.adapters = adapters or adapter_factory(settings)

    def adapter(self, gateway_code: str) -> GatewayAdapter:
        return self.adapters(gateway_code)

    def finalize(
        self,
        db: Session,
        order: Order,
        status: OrderStatus,
        payload: dict,
        signature_verified: Optional[bool] = None,
        needs_review: bool = False,
    ) -> bool:
        """
        Atomically move ``order`` from pending to ``status`` and apply its
        ledger effect. Returns False, writing nothing, if the order already
        left pending (including anything staged on ``db`` beforehand).
        """
        if status not in (OrderStatus.SUCCESS, OrderStatus.FAILED):
            raise ValueError(f"{status} is not a terminal status")
        values = {
            "status": status.value,
            "finalized_at": utcnow(),
            "callback_payload": payload,
        }
        if signature_verified is not None:
            values["signature_verified"] = signature_verified
        if needs_review:
            values["needs_review"] = True
        try:
            result = db.execute(
                update(Order)
                .where(Order.id == order.id)
                .where(Order.status == OrderStatus.PENDING.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                return False
            reason = ledger.settlement_reason(order, status)
            if reason is not None:
                ledger.apply_effect(db, order, reason)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(order)
        logger.info(
            "Finalized orderNo=%s direction=%s status=%s",
            order.order_no,
            order.direction,
            order.status,
        )
        return True

    def _emit_notification(self, db: Session, order: Order) -> None:
        # Delivery lives outside the finalize transaction; losing the enqueue
        # leaves the merchant to re-query, never a wrong balance.
        try:
            enqueue_merchant_notification(db, order)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to queue merchant notification orderNo=%s", order.order_no)

    def _duplicate(self, db: Session, order: Order, gateway_code: str, payload: dict, source: str) -> ReconcileOutcome:
        db.refresh(order)
        record_audit(
            db,
            AuditKind.DUPLICATE_CALLBACK,
            f"{source} for order already {order.status}",
            order_no=order.order_no,
            gateway_code=gateway_code,
            payload=payload,
        )
        db.commit()
        return ReconcileOutcome(ReconcileResult.DUPLICATE, order.order_no, order.status, f"order already {order.status}")

    def handle_callback(self, db: Session, gateway_code: str, payload: dict) -> ReconcileOutcome:
        """
        Reconcile one gateway callback. Anomalies are audited and reported
        in the outcome, never raised: the caller always acknowledges.
        """
        adapter = self.adapter(gateway_code)
        try:
            callback = adapter.normalize_callback(payload)
        except CallbackFormatError as exc:
            record_audit(db, AuditKind.MALFORMED_CALLBACK, exc.message, gateway_code=gateway_code, payload=payload)
            db.commit()
            return ReconcileOutcome(ReconcileResult.MALFORMED, detail=exc.message)

        order = find_gateway_order(db, gateway_code, callback.order_ref)
        if order is None:
            record_audit(
                db,
                AuditKind.UNKNOWN_ORDER,
                f"callback for unknown order {callback.order_ref}",
                order_no=callback.order_ref,
                gateway_code=gateway_code,
                payload=payload,
            )
            db.commit()
            return ReconcileOutcome(ReconcileResult.UNKNOWN_ORDER, callback.order_ref, detail="order not found")

        if order.status != OrderStatus.PENDING.value:
            return self._duplicate(db, order, gateway_code, payload, "callback")

        # Gateways have been seen retrying legitimate callbacks unsigned or
        # with a broken signature, so a mismatch is flagged, not rejected.
        verified = adapter.verify_callback(payload, order)
        if not verified:
            record_audit(
                db,
                AuditKind.UNVERIFIED_SIGNATURE,
                "callback signature did not verify; processed anyway",
                order_no=order.order_no,
                gateway_code=gateway_code,
                payload=payload,
            )

        if callback.final_status is None:
            order.needs_review = True
            if not verified:
                order.signature_verified = False
            record_audit(
                db,
                AuditKind.AMBIGUOUS_STATUS,
                f"gateway status {callback.gateway_message!r} maps to neither success nor failure",
                order_no=order.order_no,
                gateway_code=gateway_code,
                payload=payload,
            )
            db.commit()
            return ReconcileOutcome(ReconcileResult.AMBIGUOUS, order.order_no, order.status, callback.gateway_message)

        amount_mismatch = callback.raw_amount_cents is not None and callback.raw_amount_cents != order.amount_cents
        if amount_mismatch:
            record_audit(
                db,
                AuditKind.AMOUNT_MISMATCH,
                f"gateway reported {callback.raw_amount_cents} cents, order has {order.amount_cents}",
                order_no=order.order_no,
                gateway_code=gateway_code,
                payload=payload,
            )
        if callback.gateway_order_ref and not order.gateway_order_ref:
            order.gateway_order_ref = callback.gateway_order_ref

        applied = self.finalize(
            db,
            order,
            callback.final_status,
            payload,
            signature_verified=verified,
            needs_review=amount_mismatch or not verified,
        )
        if not applied:
            return self._duplicate(db, order, gateway_code, payload, "callback")
        self._emit_notification(db, order)
        return ReconcileOutcome(ReconcileResult.APPLIED, order.order_no, order.status)

    async def reconcile_by_query(self, db: Session, order_no: str) -> ReconcileOutcome:
        """
        Ask the gateway for the order's state; when it reports a terminal
        status for a still-pending order, apply it exactly as a callback would.
        """
        order = get_order(db, order_no)
        if order.status != OrderStatus.PENDING.value:
            return ReconcileOutcome(ReconcileResult.DUPLICATE, order.order_no, order.status, f"order already {order.status}")
        adapter = self.adapter(order.gateway_code)
        try:
            result = await adapter.query(order)
        except GatewayQueryError as exc:
            logger.warning("Gateway query failed orderNo=%s gateway=%s error=%s", order_no, order.gateway_code, exc.message)
            return ReconcileOutcome(ReconcileResult.QUERY_FAILED, order.order_no, order.status, exc.message)
        logger.info("Gateway query orderNo=%s gateway=%s gatewayStatus=%s", order_no, order.gateway_code, result.gateway_status)
        if result.final_status is None:
            return ReconcileOutcome(ReconcileResult.STILL_PENDING, order.order_no, order.status, result.gateway_status)

        payload = {
            "source": "gateway_query",
            "gateway_status": result.gateway_status,
            "gateway_response": result.raw,
            "queried_at": utcnow().isoformat(),
        }
        if not self.finalize(db, order, result.final_status, payload):
            db.refresh(order)
            return ReconcileOutcome(ReconcileResult.DUPLICATE, order.order_no, order.status, "finalized concurrently")
        self._emit_notification(db, order)
        return ReconcileOutcome(ReconcileResult.APPLIED, order.order_no, order.status, result.gateway_status)

    def resolve_manually(self, db: Session, order_no: str, status: OrderStatus, note: str = "") -> ReconcileOutcome:
        """
        Operator decision for an order the gateway will not settle (payout
        rejection, ambiguous vocabulary). Same transition, same guarantees.
        """
        order = get_order(db, order_no)
        if order.status != OrderStatus.PENDING.value:
            return ReconcileOutcome(ReconcileResult.DUPLICATE, order.order_no, order.status, f"order already {order.status}")
        record_audit(
            db,
            AuditKind.MANUAL_RESOLUTION,
            f"resolved to {status.value}: {note}",
            order_no=order.order_no,
            gateway_code=order.gateway_code,
        )
        payload = {"source": "manual", "note": note, "resolved_at": utcnow().isoformat()}
        if not self.finalize(db, order, status, payload):
            db.refresh(order)
            return ReconcileOutcome(ReconcileResult.DUPLICATE, order.order_no, order.status, "finalized concurrently")
        self._emit_notification(db, order)
        return ReconcileOutcome(ReconcileResult.APPLIED, order.order_no, order.status, note)
