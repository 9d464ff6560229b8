import argparse
import asyncio
from datetime import timedelta

from sqlalchemy.orm import Session

from paygate.config import OrderStatus, settings
from paygate.database import SessionLocal
from paygate.helpers import utcnow
from paygate.logging_config import get_logger
from paygate.models import Order
from paygate.reconciliation import ReconcileResult, ReconciliationEngine

logger = get_logger(__name__)

ATTENTION_RESULTS = {ReconcileResult.QUERY_FAILED, ReconcileResult.AMBIGUOUS}


def stale_pending_orders(db: Session, older_than_minutes: int) -> list[Order]:
    cutoff = utcnow() - timedelta(minutes=older_than_minutes)
    return (
        db.query(Order)
        .filter(Order.status == OrderStatus.PENDING.value)
        .filter(Order.created_at <= cutoff)
        .order_by(Order.id)
        .all()
    )


async def reconcile(older_than_minutes: int | None = None, engine: ReconciliationEngine | None = None) -> int:
    """
    Query the gateway for every order still pending after
    ``older_than_minutes`` and apply whatever it reports. Returns 1 when an
    order could not be settled and needs an operator, else 0.
    """
    minutes = older_than_minutes if older_than_minutes is not None else settings.pending_query_after_minutes
    engine = engine or ReconciliationEngine(settings.model_copy())
    db: Session = SessionLocal()
    attention = 0
    try:
        orders = stale_pending_orders(db, minutes)
        logger.info("Reconciling %s pending orders older than %s minutes", len(orders), minutes)
        for order in orders:
            outcome = await engine.reconcile_by_query(db, order.order_no)
            logger.info(
                "Reconciled orderNo=%s result=%s status=%s detail=%s",
                outcome.order_no,
                outcome.result.value,
                outcome.status,
                outcome.detail,
            )
            if outcome.result in ATTENTION_RESULTS or order.needs_review:
                attention += 1
    finally:
        db.close()
    if attention:
        logger.warning("%s orders need operator review", attention)
    return 1 if attention else 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Settle stale pending orders by querying their gateways.")
    parser.add_argument(
        "--older-than",
        type=int,
        default=None,
        metavar="MINUTES",
        help="only orders pending longer than this (default: PENDING_QUERY_AFTER_MINUTES)",
    )
    args = parser.parse_args(argv)
    return asyncio.run(reconcile(args.older_than))


if __name__ == "__main__":
    raise SystemExit(main())
