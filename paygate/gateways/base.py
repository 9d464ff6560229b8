from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Type

import httpx

from paygate.config import Direction, GatewayDefinition, GatewayType, OrderStatus
from paygate.errors import GatewayError, GatewaySubmissionError
from paygate.logging_config import get_logger
from paygate.models import Order

logger = get_logger(__name__)


@dataclass
class SubmissionResult:
    external_ref: Optional[str]
    payment_url: Optional[str] = None
    raw: dict = field(default_factory=dict)


@dataclass
class NormalizedCallback:
    order_ref: str
    final_status: Optional[OrderStatus]  # None when the vocabulary is ambiguous
    raw_amount_cents: Optional[int]
    gateway_message: str
    gateway_order_ref: Optional[str] = None


@dataclass
class QueryResult:
    final_status: Optional[OrderStatus]
    gateway_status: str
    raw: dict = field(default_factory=dict)


@dataclass
class Acknowledgment:
    content: str
    media_type: str


def decimal_to_cents(raw: Any) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        return int((Decimal(str(raw)) * 100).to_integral_value())
    except InvalidOperation:
        return None


class GatewayAdapter:
    """
    One settlement gateway: its request shapes, signing, status vocabulary
    and callback acknowledgment. Subclasses fill in the wire details.
    """

    gateway_type: GatewayType

    def __init__(
        self,
        definition: GatewayDefinition,
        notify_url: str,
        timeout: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.definition = definition
        self.notify_url = notify_url
        self.timeout = timeout
        self.transport = transport

    @property
    def code(self) -> str:
        return self.definition.code

    def signing_key(self, direction: str) -> str:
        if direction == Direction.PAYOUT.value and self.definition.payout_key:
            return self.definition.payout_key
        return self.definition.api_key

    async def submit(self, order: Order) -> SubmissionResult:
        raise NotImplementedError

    def normalize_callback(self, payload: dict) -> NormalizedCallback:
        raise NotImplementedError

    def verify_callback(self, payload: dict, order: Order) -> bool:
        raise NotImplementedError

    async def query(self, order: Order) -> QueryResult:
        raise NotImplementedError

    def acknowledgment(self) -> Acknowledgment:
        raise NotImplementedError

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.definition.base_url,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def _post(
        self,
        path: str,
        error_cls: Type[GatewayError] = GatewaySubmissionError,
        json: Optional[dict] = None,
        data: Optional[dict] = None,
    ) -> dict:
        """
        POST to the gateway and return the decoded JSON object. Timeouts,
        transport errors, non-2xx answers and non-object bodies all surface
        as ``error_cls``.
        """
        try:
            async with self._client() as client:
                response = await client.post(path, json=json, data=data)
        except httpx.TimeoutException as exc:
            raise error_cls(f"{self.code} request to {path} timed out", gateway_code=self.code) from exc
        except httpx.RequestError as exc:
            raise error_cls(f"{self.code} request error: {exc}", gateway_code=self.code) from exc
        logger.info("Gateway response gateway=%s path=%s status=%s", self.code, path, response.status_code)
        if not response.is_success:
            raise error_cls(
                f"{self.code} answered HTTP {response.status_code}",
                gateway_code=self.code,
                http_status=response.status_code,
                body=response.text[:500],
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise error_cls(f"{self.code} returned a non-JSON body", gateway_code=self.code) from exc
        if not isinstance(body, dict):
            raise error_cls(f"{self.code} returned an unexpected body shape", gateway_code=self.code)
        return body
