import json

from paygate.config import Direction, GatewayType, OrderStatus
from paygate.errors import CallbackFormatError, GatewayQueryError, GatewaySubmissionError
from paygate.gateways.base import (
    Acknowledgment,
    GatewayAdapter,
    NormalizedCallback,
    QueryResult,
    SubmissionResult,
    decimal_to_cents,
)
from paygate.helpers import format_amount
from paygate.logging_config import get_logger
from paygate.models import Order
from paygate.security import concat_md5, verify_concat_md5

logger = get_logger(__name__)

PAYIN_PATH = "/v1/create"
PAYOUT_PATH = "/payout/payment.php"
QUERY_PATH = "/v1/query"

# Pay-in callbacks use lowercase enums, pay-out callbacks uppercase.
payin_status_map = {
    "success": OrderStatus.SUCCESS,
    "failed": OrderStatus.FAILED,
}
payout_status_map = {
    "SUCCESS": OrderStatus.SUCCESS,
    "FAILED": OrderStatus.FAILED,
}
query_status_map = {
    "success": OrderStatus.SUCCESS,
    "completed": OrderStatus.SUCCESS,
    "1": OrderStatus.SUCCESS,
    "failed": OrderStatus.FAILED,
    "rejected": OrderStatus.FAILED,
    "0": OrderStatus.FAILED,
}
payout_rejection_tokens = {"error", "failed", "fail", "false"}


class BondPayAdapter(GatewayAdapter):
    """
    BondPay: JSON pay-in, form-encoded pay-out, decimal-string amounts and
    concatenation-MD5 signatures. Acknowledges callbacks with ``{"status": "ok"}``.
    """

    gateway_type = GatewayType.BONDPAY

    async def submit(self, order: Order) -> SubmissionResult:
        amount = format_amount(order.amount_cents)
        if order.direction == Direction.PAYIN.value:
            return await self._submit_payin(order, amount)
        return await self._submit_payout(order, amount)

    async def _submit_payin(self, order: Order, amount: str) -> SubmissionResult:
        definition = self.definition
        signature = concat_md5([definition.app_id, amount, order.order_no, definition.api_key, self.notify_url])
        body = await self._post(
            PAYIN_PATH,
            json={
                "merchant_id": definition.app_id,
                "api_key": definition.api_key,
                "amount": amount,
                "merchant_order_no": order.order_no,
                "callback_url": self.notify_url,
                "extra": str(order.merchant_id),
                "signature": signature,
            },
        )
        payment_url = body.get("payment_url")
        if not payment_url:
            raise GatewaySubmissionError(
                f"{self.code} pay-in response carried no payment_url: {body.get('message')}",
                gateway_code=self.code,
            )
        return SubmissionResult(
            external_ref=body.get("orderNo") or body.get("order_no"),
            payment_url=payment_url,
            raw=body,
        )

    async def _submit_payout(self, order: Order, amount: str) -> SubmissionResult:
        definition = self.definition
        payout_key = self.signing_key(Direction.PAYOUT.value)
        signature = concat_md5(
            [
                order.account_number,
                amount,
                order.bank_name,
                self.notify_url,
                order.ifsc,
                definition.app_id,
                order.account_name,
                order.order_no,
                payout_key,
            ]
        )
        body = await self._post(
            PAYOUT_PATH,
            data={
                "merchant_id": definition.app_id,
                "amount": amount,
                "transaction_id": order.order_no,
                "account_number": order.account_number or "",
                "ifsc": order.ifsc or "",
                "name": order.account_name or "",
                "bank_name": order.bank_name or "",
                "callback_url": self.notify_url,
                "signature": signature,
            },
        )
        if str(body.get("status", "")).lower() in payout_rejection_tokens:
            raise GatewaySubmissionError(
                f"{self.code} refused pay-out: {body.get('message')}",
                gateway_code=self.code,
            )
        return SubmissionResult(external_ref=body.get("orderNo") or body.get("order_no"), raw=body)

    def normalize_callback(self, payload: dict) -> NormalizedCallback:
        status = str(payload.get("status", "")).strip()
        if payload.get("orderNo") and payload.get("merchantOrder"):
            return NormalizedCallback(
                order_ref=str(payload["merchantOrder"]),
                final_status=payin_status_map.get(status.lower()),
                raw_amount_cents=decimal_to_cents(payload.get("amount")),
                gateway_message=status,
                gateway_order_ref=str(payload["orderNo"]),
            )
        if payload.get("transaction_id") and payload.get("merchant_id"):
            return NormalizedCallback(
                order_ref=str(payload["transaction_id"]),
                final_status=payout_status_map.get(status.upper()),
                raw_amount_cents=decimal_to_cents(payload.get("amount")),
                gateway_message=status,
            )
        raise CallbackFormatError(f"{self.code} callback has neither pay-in nor pay-out shape", gateway_code=self.code)

    def verify_callback(self, payload: dict, order: Order) -> bool:
        order_ref = payload.get("merchantOrder") or payload.get("transaction_id")
        signature = payload.get("sign") or payload.get("signature")
        return verify_concat_md5([order_ref, payload.get("amount"), self.signing_key(order.direction)], signature)

    async def query(self, order: Order) -> QueryResult:
        definition = self.definition
        body = await self._post(
            QUERY_PATH,
            error_cls=GatewayQueryError,
            json={
                "merchant_id": definition.app_id,
                "merchant_order_no": order.order_no,
                "sign": concat_md5([definition.app_id, order.order_no, definition.api_key]),
            },
        )
        gateway_status = str(body.get("status", "")).strip().lower()
        return QueryResult(final_status=query_status_map.get(gateway_status), gateway_status=gateway_status, raw=body)

    def acknowledgment(self) -> Acknowledgment:
        return Acknowledgment(content=json.dumps({"status": "ok"}), media_type="application/json")
