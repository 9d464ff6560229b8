import asyncio
from datetime import timedelta

import httpx
import pytest

from paygate import ledger
from paygate.config import OrderStatus
from paygate.helpers import utcnow
from paygate.models import AuditEntry, MerchantNotification
from paygate.orders import create_payin
from paygate.webhooks import DeliveryOutcome, MerchantNotifier, enqueue_merchant_notification, process_outbox


@pytest.fixture
def sleeps(monkeypatch):
    calls = []

    async def fake_sleep(seconds):
        calls.append(seconds)

    monkeypatch.setattr("paygate.webhooks.asyncio.sleep", fake_sleep)
    return calls


def scripted_transport(statuses, seen):
    """Answer successive POSTs with ``statuses``; an exception class is raised instead."""
    queue = list(statuses)

    def handler(request):
        seen.append(request)
        status = queue.pop(0)
        if isinstance(status, type):
            raise status("simulated", request=request)
        return httpx.Response(status, json={"ok": status < 300})

    return httpx.MockTransport(handler)


@pytest.fixture
def settled_payin(db, engine, merchant_factory):
    merchant = merchant_factory(available_cents=0)
    order, _ = create_payin(db, merchant, "ORD-1", 100000, None, "bondpay")
    engine.finalize(db, order, OrderStatus.SUCCESS, {"source": "test"})
    return order


def test_retries_server_errors_then_delivers(sleeps, run):
    seen = []
    notifier = MerchantNotifier(max_attempts=3, backoff_seconds=1, transport=scripted_transport([500, 500, 200], seen))

    outcome = run(notifier.notify("http://merchant.test/notify", {"order_no": "PI1"}))

    assert outcome.delivered
    assert outcome.attempts == 3
    assert len(seen) == 3
    assert sleeps == [1, 2]


@pytest.mark.parametrize("status", [400, 404, 422, 429])
def test_client_error_is_permanent(sleeps, run, status):
    seen = []
    notifier = MerchantNotifier(max_attempts=3, backoff_seconds=1, transport=scripted_transport([status], seen))

    outcome = run(notifier.notify("http://merchant.test/notify", {}))

    assert not outcome.delivered
    assert outcome.permanent
    assert outcome.attempts == 1
    assert outcome.last_status == status
    assert sleeps == []


@pytest.mark.parametrize("first", [500, 503, httpx.ConnectError, httpx.ReadTimeout])
def test_transient_failures_are_retried(sleeps, run, first):
    seen = []
    notifier = MerchantNotifier(max_attempts=3, backoff_seconds=1, transport=scripted_transport([first, 204], seen))

    outcome = run(notifier.notify("http://merchant.test/notify", {}))

    assert outcome.delivered
    assert outcome.attempts == 2
    assert sleeps == [1]


def test_gives_up_after_max_attempts(sleeps, run):
    seen = []
    notifier = MerchantNotifier(max_attempts=3, backoff_seconds=1, transport=scripted_transport([500, 502, 503], seen))

    outcome = run(notifier.notify("http://merchant.test/notify", {}))

    assert not outcome.delivered
    assert not outcome.permanent
    assert outcome.attempts == 3
    assert "503" in outcome.last_error
    assert sleeps == [1, 2]


def test_no_callback_url_means_no_notification(db, merchant_factory):
    merchant = merchant_factory(callback_url=None)
    order, _ = create_payin(db, merchant, "ORD-1", 100000, None, "bondpay")
    assert enqueue_merchant_notification(db, order) is None


def test_outbox_marks_record_sent(db, settled_payin, sleeps, run):
    enqueue_merchant_notification(db, settled_payin)
    seen = []
    notifier = MerchantNotifier(max_attempts=3, backoff_seconds=1, transport=scripted_transport([500, 500, 200], seen))

    assert run(process_outbox(db, notifier)) == 1

    record = db.query(MerchantNotification).one()
    assert record.status == "sent"
    assert record.attempt_count == 3
    assert record.last_error is None
    assert seen[0].url == "http://merchant.test/notify"


def test_delivery_failure_never_touches_order_or_ledger(db, settled_payin, sleeps, run):
    enqueue_merchant_notification(db, settled_payin)
    seen = []
    notifier = MerchantNotifier(max_attempts=3, backoff_seconds=1, transport=scripted_transport([500, 500, 500], seen))

    run(process_outbox(db, notifier))

    record = db.query(MerchantNotification).one()
    assert record.status == "failed"
    db.refresh(settled_payin)
    assert settled_payin.status == OrderStatus.SUCCESS.value
    assert ledger.balances(db, settled_payin.merchant_id) == (97000, 0)
    assert db.query(AuditEntry).filter(AuditEntry.kind == "delivery_failed").count() == 1


def test_rejected_delivery_is_not_retried(db, settled_payin, sleeps, run):
    enqueue_merchant_notification(db, settled_payin)
    seen = []
    notifier = MerchantNotifier(max_attempts=3, backoff_seconds=1, transport=scripted_transport([422], seen))

    run(process_outbox(db, notifier))
    run(process_outbox(db, notifier))

    record = db.query(MerchantNotification).one()
    assert record.status == "rejected"
    assert len(seen) == 1


def test_outbox_skips_records_not_yet_due(db, settled_payin, run):
    record = enqueue_merchant_notification(db, settled_payin)
    record.next_attempt_at = utcnow() + timedelta(minutes=5)
    db.commit()
    seen = []
    notifier = MerchantNotifier(transport=scripted_transport([200], seen))

    assert run(process_outbox(db, notifier)) == 0
    assert seen == []


def test_unusable_url_is_permanent(sleeps, run):
    seen = []
    notifier = MerchantNotifier(max_attempts=3, backoff_seconds=1, transport=scripted_transport([200], seen))

    outcome = run(notifier.notify("http://merchant.test/\x01notify", {}))

    assert not outcome.delivered
    assert outcome.permanent
    assert outcome.attempts == 1
    assert seen == []
    assert sleeps == []


def _settled(db, engine, merchant, merchant_order_no="ORD-1"):
    order, _ = create_payin(db, merchant, merchant_order_no, 100000, None, "bondpay")
    engine.finalize(db, order, OrderStatus.SUCCESS, {"source": "test"})
    return enqueue_merchant_notification(db, order)


def test_bad_callback_url_does_not_stall_other_merchants(db, engine, merchant_factory, sleeps, run):
    broken = _settled(db, engine, merchant_factory("M1001", callback_url="http://merchant.test/\x01notify"))
    healthy = _settled(db, engine, merchant_factory("M1002", callback_url="http://merchant.test/notify"))
    seen = []
    notifier = MerchantNotifier(max_attempts=3, backoff_seconds=1, transport=scripted_transport([200], seen))

    assert run(process_outbox(db, notifier)) == 2
    assert run(process_outbox(db, notifier)) == 0

    db.refresh(broken)
    db.refresh(healthy)
    assert broken.status == "rejected"
    assert "unusable webhook url" in broken.last_error
    assert healthy.status == "sent"
    assert [str(r.url) for r in seen] == ["http://merchant.test/notify"]


class CrashingNotifier(MerchantNotifier):
    def __init__(self, crash_on, **kwargs):
        super().__init__(**kwargs)
        self.crash_on = crash_on

    async def notify(self, url, payload):
        if url == self.crash_on:
            raise RuntimeError("boom")
        return await super().notify(url, payload)


def test_unexpected_delivery_error_is_recorded_and_queue_moves_on(db, engine, merchant_factory, sleeps, run):
    crashed = _settled(db, engine, merchant_factory("M1001", callback_url="http://crash.test/notify"))
    healthy = _settled(db, engine, merchant_factory("M1002"))
    seen = []
    notifier = CrashingNotifier(
        "http://crash.test/notify", max_attempts=3, backoff_seconds=1, transport=scripted_transport([200], seen)
    )

    run(process_outbox(db, notifier))

    db.refresh(crashed)
    db.refresh(healthy)
    assert crashed.status == "failed"
    assert "boom" in crashed.last_error
    assert healthy.status == "sent"
    assert db.query(AuditEntry).filter(AuditEntry.kind == "delivery_failed").count() == 1


class GatedNotifier:
    """The slow merchant only answers once the fast one has been delivered."""

    def __init__(self):
        self.fast_done = asyncio.Event()
        self.finished = []

    async def notify(self, url, payload):
        if "slow" in url:
            await asyncio.wait_for(self.fast_done.wait(), timeout=5)
        else:
            self.fast_done.set()
        self.finished.append(url)
        return DeliveryOutcome(True, False, 1, 200)


def test_slow_merchant_does_not_hold_up_others(db, engine, merchant_factory, run):
    slow = _settled(db, engine, merchant_factory("M1001", callback_url="http://slow.test/notify"))
    fast = _settled(db, engine, merchant_factory("M1002", callback_url="http://fast.test/notify"))
    notifier = GatedNotifier()

    assert run(process_outbox(db, notifier)) == 2

    assert notifier.finished == ["http://fast.test/notify", "http://slow.test/notify"]
    db.refresh(slow)
    db.refresh(fast)
    assert slow.status == fast.status == "sent"
