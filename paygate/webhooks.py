import asyncio
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from paygate.audit import AuditKind, record_audit
from paygate.config import settings
from paygate.helpers import as_utc, format_amount, utcnow
from paygate.logging_config import get_logger
from paygate.models import MerchantNotification, Order

logger = get_logger(__name__)


@dataclass
class DeliveryOutcome:
    delivered: bool
    permanent: bool
    attempts: int
    last_status: Optional[int] = None
    last_error: Optional[str] = None


class MerchantNotifier:
    """
    POSTs a status payload to a merchant webhook. Network errors, timeouts
    and 5xx are retried with doubling backoff; a 4xx means the merchant
    refused the payload and is final, as is a URL httpx cannot use.
    """

    def __init__(
        self,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        timeout: float | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.max_attempts = max_attempts if max_attempts is not None else settings.notify_max_attempts
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.notify_backoff_seconds
        self.timeout = timeout if timeout is not None else settings.notify_timeout_seconds
        self.transport = transport

    async def notify(self, url: str, payload: dict) -> DeliveryOutcome:
        attempts = 0
        backoff = self.backoff_seconds
        last_status: Optional[int] = None
        last_error: Optional[str] = None
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            while attempts < self.max_attempts:
                attempts += 1
                try:
                    response = await client.post(url, json=payload)
                except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
                    return DeliveryOutcome(False, True, attempts, None, f"unusable webhook url: {exc!r}")
                except httpx.TimeoutException as exc:
                    last_status, last_error = None, f"timeout: {exc!r}"
                except httpx.RequestError as exc:
                    last_status, last_error = None, f"request error: {exc!r}"
                else:
                    last_status = response.status_code
                    if response.is_success:
                        return DeliveryOutcome(True, False, attempts, last_status)
                    if 400 <= last_status < 500:
                        return DeliveryOutcome(
                            False, True, attempts, last_status, f"merchant rejected payload with HTTP {last_status}"
                        )
                    last_error = f"merchant endpoint answered HTTP {last_status}"
                logger.info(
                    "Merchant webhook attempt failed url=%s attempt=%s/%s error=%s",
                    url,
                    attempts,
                    self.max_attempts,
                    last_error,
                )
                if attempts < self.max_attempts:
                    await asyncio.sleep(backoff)
                    backoff *= 2
        return DeliveryOutcome(False, False, attempts, last_status, last_error)


def build_notification_payload(order: Order) -> dict:
    return {
        "order_no": order.order_no,
        "merchant_order_no": order.merchant_order_no,
        "direction": order.direction,
        "status": order.status,
        "amount": format_amount(order.amount_cents),
        "fee": format_amount(order.fee_cents),
        "net_amount": format_amount(order.net_amount_cents),
        "timestamp": utcnow().isoformat(),
    }


def enqueue_merchant_notification(db: Session, order: Order) -> Optional[MerchantNotification]:
    if not order.merchant_callback_url:
        logger.info("No merchant callback configured orderNo=%s; nothing to notify", order.order_no)
        return None
    record = MerchantNotification(
        order_id=order.id,
        event_type=f"{order.direction}.{order.status}",
        target_url=order.merchant_callback_url,
        payload=build_notification_payload(order),
        status="pending",
        attempt_count=0,
        next_attempt_at=utcnow(),
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("Queued merchant notification id=%s orderNo=%s event=%s", record.id, order.order_no, record.event_type)
    return record


merchant_notifier = MerchantNotifier()


async def _attempt(notifier: MerchantNotifier, record: MerchantNotification) -> DeliveryOutcome:
    logger.info(
        "Processing outbox record: record_id=%s event_type=%s attempt_count=%s",
        record.id,
        record.event_type,
        record.attempt_count,
    )
    try:
        return await notifier.notify(record.target_url, record.payload)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Outbox delivery crashed: record_id=%s", record.id)
        return DeliveryOutcome(False, False, 1, None, f"delivery error: {exc!r}")


def record_outcome(db: Session, record: MerchantNotification, outcome: DeliveryOutcome) -> MerchantNotification:
    record.attempt_count = (record.attempt_count or 0) + outcome.attempts
    if outcome.delivered:
        record.status = "sent"
        record.last_error = None
    else:
        record.status = "rejected" if outcome.permanent else "failed"
        record.last_error = outcome.last_error
        record_audit(
            db,
            AuditKind.DELIVERY_FAILED,
            f"{record.status}: {outcome.last_error}",
            order_no=record.payload.get("order_no"),
            payload={"notification_id": record.id, "attempts": outcome.attempts, "last_status": outcome.last_status},
        )
    logger.info(
        "Outbox delivery result: record_id=%s status=%s attempts=%s last_status=%s",
        record.id,
        record.status,
        record.attempt_count,
        outcome.last_status,
    )
    db.add(record)
    db.commit()
    return record


async def process_outbox(
    db: Session, notifier: Optional[MerchantNotifier] = None, concurrency: int | None = None
) -> int:
    """
    Deliver every due pending record. Deliveries run concurrently (bounded
    by ``concurrency``) so one slow merchant does not hold up the rest;
    results are written back one record at a time.
    """
    notifier = notifier or merchant_notifier
    concurrency = concurrency if concurrency is not None else settings.outbox_concurrency
    now = utcnow()
    pending = (
        db.query(MerchantNotification)
        .filter(MerchantNotification.status == "pending")
        .order_by(MerchantNotification.id)
        .all()
    )
    due = [r for r in pending if not (r.next_attempt_at and as_utc(r.next_attempt_at) > now)]
    if not due:
        return 0
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def attempt(record: MerchantNotification) -> DeliveryOutcome:
        async with semaphore:
            return await _attempt(notifier, record)

    outcomes = await asyncio.gather(*(attempt(record) for record in due))
    for record, outcome in zip(due, outcomes):
        try:
            record_outcome(db, record, outcome)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Could not store outbox result; record stays pending: record_id=%s", record.id)
    return len(due)


async def background_outbox_worker(db_factory, notifier: Optional[MerchantNotifier] = None, poll_seconds: float | None = None):
    poll_seconds = poll_seconds if poll_seconds is not None else settings.outbox_poll_seconds
    while True:
        db = db_factory()
        try:
            await process_outbox(db, notifier)
        except Exception:  # noqa: BLE001
            logger.exception("Outbox worker pass failed; retrying after %ss", poll_seconds)
            db.rollback()
        finally:
            db.close()
        await asyncio.sleep(poll_seconds)
