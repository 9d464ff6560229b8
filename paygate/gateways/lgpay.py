from typing import Any, Optional

from paygate.config import Direction, GatewayType, OrderStatus
from paygate.errors import CallbackFormatError, GatewayQueryError, GatewaySubmissionError
from paygate.gateways.base import (
    Acknowledgment,
    GatewayAdapter,
    NormalizedCallback,
    QueryResult,
    SubmissionResult,
)
from paygate.logging_config import get_logger
from paygate.models import Order
from paygate.security import sorted_query_md5, verify_sorted_query_md5

logger = get_logger(__name__)

PAYIN_PATH = "/api/order/create"
PAYOUT_PATH = "/api/deposit/create"
QUERY_PATH = "/api/order/query"

callback_status_map = {
    "1": OrderStatus.SUCCESS,
    "success": OrderStatus.SUCCESS,
    "0": OrderStatus.FAILED,
    "fail": OrderStatus.FAILED,
    "failed": OrderStatus.FAILED,
}
# data.status on /api/order/query
query_order_status_map = {
    "2": OrderStatus.SUCCESS,
    "3": OrderStatus.FAILED,
    "1": None,
}
query_message_map = {
    "success": OrderStatus.SUCCESS,
    "failed": OrderStatus.FAILED,
    "fail": OrderStatus.FAILED,
}


def _is_ok(value: Any) -> bool:
    return str(value).strip() == "1"


def _cents(raw: Any) -> Optional[int]:
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return None


class LGPayAdapter(GatewayAdapter):
    """
    LG Pay (mobile-money style): form-encoded requests, ``money`` in integer
    cents, ASCII-sorted uppercase MD5 signatures, plaintext ``ok`` acks.
    """

    gateway_type = GatewayType.LGPAY

    async def submit(self, order: Order) -> SubmissionResult:
        if order.direction == Direction.PAYIN.value:
            params = {
                "app_id": self.definition.app_id,
                "trade_type": self.definition.trade_type or "test",
                "order_sn": order.order_no,
                "money": order.amount_cents,
                "notify_url": self.notify_url,
                "ip": "0.0.0.0",
                "remark": str(order.merchant_id),
            }
            path = PAYIN_PATH
        else:
            params = {
                "app_id": self.definition.app_id,
                "order_sn": order.order_no,
                "currency": self.definition.currency,
                "money": order.amount_cents,
                "notify_url": self.notify_url,
                "name": order.account_name or "",
                "card_number": order.account_number or "",
                "bank_name": order.bank_name or "",
                "addon2": "v1.0",
            }
            if self.definition.currency == "INR" and order.ifsc:
                params["addon1"] = order.ifsc
            path = PAYOUT_PATH
        params["sign"] = sorted_query_md5(params, self.signing_key(order.direction))
        body = await self._post(path, data={k: str(v) for k, v in params.items()})
        if not _is_ok(body.get("status")):
            raise GatewaySubmissionError(
                f"{self.code} refused order: {body.get('msg')}",
                gateway_code=self.code,
            )
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        payment_url = data.get("pay_url")
        if order.direction == Direction.PAYIN.value and not payment_url:
            raise GatewaySubmissionError(f"{self.code} pay-in response carried no pay_url", gateway_code=self.code)
        return SubmissionResult(
            external_ref=data.get("order_no") or data.get("trade_no"),
            payment_url=payment_url,
            raw=body,
        )

    def normalize_callback(self, payload: dict) -> NormalizedCallback:
        order_ref = payload.get("order_sn") or payload.get("merchant_order_no")
        if not order_ref:
            raise CallbackFormatError(f"{self.code} callback has no order_sn", gateway_code=self.code)
        status = str(payload.get("status", "")).strip()
        money = payload.get("money", payload.get("amount"))
        return NormalizedCallback(
            order_ref=str(order_ref),
            final_status=callback_status_map.get(status.lower()),
            raw_amount_cents=_cents(money),
            gateway_message=str(payload.get("msg") or status),
            gateway_order_ref=payload.get("order_no") or payload.get("trade_no"),
        )

    def verify_callback(self, payload: dict, order: Order) -> bool:
        return verify_sorted_query_md5(payload, self.signing_key(order.direction), payload.get("sign"))

    async def query(self, order: Order) -> QueryResult:
        params = {"app_id": self.definition.app_id, "order_sn": order.order_no}
        params["sign"] = sorted_query_md5(params, self.definition.api_key)
        body = await self._post(QUERY_PATH, error_cls=GatewayQueryError, data=params)
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        message = str(body.get("msg") or "").strip().lower()
        if _is_ok(body.get("status")):
            order_status = str(data.get("status", "")).strip()
            if order_status in query_order_status_map:
                final_status = query_order_status_map[order_status]
            else:
                final_status = query_message_map.get(message)
            return QueryResult(final_status=final_status, gateway_status=f"status={order_status or '-'} msg={message}", raw=body)
        # A refused query (status=0) does not say the payment failed.
        return QueryResult(final_status=None, gateway_status=f"query refused: {message}", raw=body)

    def acknowledgment(self) -> Acknowledgment:
        return Acknowledgment(content="ok", media_type="text/plain")
