import json
from urllib.parse import parse_qsl

import httpx
import pytest

from paygate.config import OrderStatus, settings
from paygate.errors import CallbackFormatError, GatewayError, GatewaySubmissionError
from paygate.gateways import build_adapter
from paygate.gateways.bondpay import BondPayAdapter
from paygate.gateways.lgpay import LGPayAdapter
from paygate.models import Order
from paygate.security import concat_md5, verify_sorted_query_md5


def _payin(order_no="PI1", amount_cents=100000):
    return Order(order_no=order_no, direction="payin", amount_cents=amount_cents, merchant_id=7)


def _payout(order_no="PO1", amount_cents=50000):
    return Order(
        order_no=order_no,
        direction="payout",
        amount_cents=amount_cents,
        merchant_id=7,
        account_number="100000",
        account_name="Ravi Kumar",
        bank_name="ICICI",
        ifsc="ICIC0001",
    )


def _form(request: httpx.Request) -> dict:
    return dict(parse_qsl(request.content.decode()))


def test_registry_builds_each_gateway_type(engine):
    assert isinstance(engine.adapter("bondpay"), BondPayAdapter)
    assert isinstance(engine.adapter("lgpay"), LGPayAdapter)
    assert engine.adapter("lgpay").notify_url == "http://hub.test/callbacks/lgpay"


def test_unknown_gateway_code_raises(db_engine):
    with pytest.raises(GatewayError):
        build_adapter("nope", settings)


def test_bondpay_payin_submission(engine, gateway, run):
    adapter = engine.adapter("bondpay")
    result = run(adapter.submit(_payin()))

    assert result.external_ref == "BP-1"
    assert result.payment_url == "https://pay.test/BP-1"
    body = json.loads(gateway.sent_to("/v1/create")[0].content)
    assert body["amount"] == "1000.00"
    assert body["merchant_order_no"] == "PI1"
    assert body["callback_url"] == "http://hub.test/callbacks/bondpay"
    assert body["signature"] == concat_md5(["MASTER001", "1000.00", "PI1", "bp_key", "http://hub.test/callbacks/bondpay"])


def test_bondpay_payin_without_payment_url_fails(engine, gateway, run):
    gateway.respond("/v1/create", json={"status": "error", "message": "merchant disabled"})
    with pytest.raises(GatewaySubmissionError) as exc_info:
        run(engine.adapter("bondpay").submit(_payin()))
    assert "merchant disabled" in exc_info.value.message


def test_bondpay_payout_is_form_encoded_and_signed_with_payout_key(engine, gateway, run):
    result = run(engine.adapter("bondpay").submit(_payout()))

    assert result.external_ref == "BPO-1"
    sent = gateway.sent_to("/payout/payment.php")[0]
    assert sent.headers["content-type"].startswith("application/x-www-form-urlencoded")
    form = _form(sent)
    assert form["transaction_id"] == "PO1"
    assert form["amount"] == "500.00"
    assert form["signature"] == concat_md5(
        [
            "100000",
            "500.00",
            "ICICI",
            "http://hub.test/callbacks/bondpay",
            "ICIC0001",
            "MASTER001",
            "Ravi Kumar",
            "PO1",
            "bp_payout_key",
        ]
    )


def test_bondpay_payout_rejection_status(engine, gateway, run):
    gateway.respond("/payout/payment.php", json={"status": "error", "message": "insufficient float"})
    with pytest.raises(GatewaySubmissionError):
        run(engine.adapter("bondpay").submit(_payout()))


@pytest.mark.parametrize(
    "kwargs",
    [
        {"exc": httpx.ReadTimeout},
        {"exc": httpx.ConnectError},
        {"status_code": 500, "json": {"message": "boom"}},
        {"status_code": 200, "text": "<html>bad gateway</html>"},
        {"status_code": 200, "json": ["not", "an", "object"]},
    ],
)
def test_bondpay_transport_failures_are_submission_errors(engine, gateway, run, kwargs):
    gateway.respond("/v1/create", **kwargs)
    with pytest.raises(GatewaySubmissionError) as exc_info:
        run(engine.adapter("bondpay").submit(_payin()))
    assert exc_info.value.retryable
    assert exc_info.value.gateway_code == "bondpay"


def test_lgpay_payin_submission(engine, gateway, run):
    result = run(engine.adapter("lgpay").submit(_payin()))

    assert result.external_ref == "LG-1"
    assert result.payment_url == "https://pay.test/LG-1"
    form = _form(gateway.sent_to("/api/order/create")[0])
    assert form["money"] == "100000"
    assert form["trade_type"] == "INRUPI"
    assert form["notify_url"] == "http://hub.test/callbacks/lgpay"
    assert verify_sorted_query_md5(form, "lg_key", form["sign"])
    assert form["sign"].isupper()


def test_lgpay_payout_carries_ifsc(engine, gateway, run):
    run(engine.adapter("lgpay").submit(_payout()))

    form = _form(gateway.sent_to("/api/deposit/create")[0])
    assert form["addon1"] == "ICIC0001"
    assert form["currency"] == "INR"
    assert form["card_number"] == "100000"
    assert verify_sorted_query_md5(form, "lg_key", form["sign"])


def test_lgpay_refusal_raises(engine, gateway, run):
    gateway.respond("/api/order/create", json={"status": 0, "msg": "sign error"})
    with pytest.raises(GatewaySubmissionError) as exc_info:
        run(engine.adapter("lgpay").submit(_payin()))
    assert "sign error" in exc_info.value.message


def test_bondpay_callback_shapes(engine):
    adapter = engine.adapter("bondpay")
    payin = adapter.normalize_callback({"orderNo": "BP-1", "merchantOrder": "PI1", "status": "success", "amount": "1000.00"})
    assert payin.order_ref == "PI1"
    assert payin.final_status == OrderStatus.SUCCESS
    assert payin.raw_amount_cents == 100000
    assert payin.gateway_order_ref == "BP-1"

    payout = adapter.normalize_callback({"transaction_id": "PO1", "merchant_id": "MASTER001", "status": "FAILED"})
    assert payout.order_ref == "PO1"
    assert payout.final_status == OrderStatus.FAILED
    assert payout.raw_amount_cents is None

    with pytest.raises(CallbackFormatError):
        adapter.normalize_callback({"status": "success"})


def test_bondpay_callback_verification_uses_direction_key(engine):
    adapter = engine.adapter("bondpay")
    payout_order = _payout()
    payload = {"transaction_id": "PO1", "amount": "500.00", "sign": concat_md5(["PO1", "500.00", "bp_payout_key"])}
    assert adapter.verify_callback(payload, payout_order)
    payload["sign"] = concat_md5(["PO1", "500.00", "bp_key"])
    assert not adapter.verify_callback(payload, payout_order)


def test_lgpay_callback_requires_order_reference(engine):
    with pytest.raises(CallbackFormatError):
        engine.adapter("lgpay").normalize_callback({"status": "1", "money": "100"})


def test_acknowledgments_differ_per_gateway(engine):
    bondpay_ack = engine.adapter("bondpay").acknowledgment()
    lgpay_ack = engine.adapter("lgpay").acknowledgment()
    assert json.loads(bondpay_ack.content) == {"status": "ok"}
    assert bondpay_ack.media_type == "application/json"
    assert (lgpay_ack.content, lgpay_ack.media_type) == ("ok", "text/plain")
