from decimal import Decimal
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AfterValidator, AnyHttpUrl, BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

Amount = Union[str, int, float]
NonEmptyStr = Annotated[str, Field(min_length=1)]

_http_url = TypeAdapter(AnyHttpUrl)


def _check_callback_url(value: str) -> str:
    # Kept verbatim: merchants sign the URL exactly as they sent it.
    if not value:
        return value
    if not value.isprintable() or any(ch.isspace() for ch in value):
        raise ValueError("callback_url contains whitespace or control characters")
    try:
        _http_url.validate_python(value)
    except PydanticValidationError as exc:
        raise ValueError(f"callback_url is not a valid http(s) URL: {exc.errors()[0]['msg']}") from exc
    return value


CallbackUrl = Annotated[str, AfterValidator(_check_callback_url)]


def amount_text(raw: Amount) -> str:
    """The amount exactly as merchants' SDKs stringify it when signing."""
    if isinstance(raw, float) and raw.is_integer():
        return str(int(raw))
    return str(raw).strip()


class PayinRequest(BaseModel):
    merchant_id: NonEmptyStr
    amount: Amount
    merchant_order_no: NonEmptyStr
    callback_url: Optional[CallbackUrl] = None
    sign: NonEmptyStr
    extra: Optional[Any] = None


class PayoutRequest(BaseModel):
    merchant_id: NonEmptyStr
    amount: Amount
    transaction_id: NonEmptyStr
    account_number: NonEmptyStr
    ifsc: NonEmptyStr
    name: NonEmptyStr
    bank_name: NonEmptyStr
    callback_url: Optional[CallbackUrl] = None
    sign: NonEmptyStr


class PayinData(BaseModel):
    order_no: str
    merchant_order_no: str
    amount: str
    fee: str
    net_amount: str
    payment_url: Optional[str] = None
    status: str


class PayoutData(BaseModel):
    order_no: str
    merchant_order_no: str
    amount: str
    fee: str
    total_amount: str
    status: str


class PayinResponse(BaseModel):
    code: int = 200
    message: str = "Success"
    success: bool = True
    data: PayinData


class PayoutResponse(BaseModel):
    code: int = 200
    message: str = "Success"
    success: bool = True
    data: PayoutData


class MerchantCreate(BaseModel):
    merchant_name: NonEmptyStr
    account_number: Optional[str] = None
    payin_fee_percent: Decimal = Field(Decimal("0"), ge=0, le=100)
    payout_fee_percent: Decimal = Field(Decimal("0"), ge=0, le=100)
    gateway_code: Optional[str] = None
    callback_url: Optional[CallbackUrl] = None
    opening_balance: Decimal = Field(Decimal("0"), ge=0)


class MerchantView(BaseModel):
    account_number: str
    merchant_name: str
    api_key: str
    payout_key: str
    payin_fee_bps: int
    payout_fee_bps: int
    gateway_code: Optional[str] = None
    available_balance: str
    frozen_balance: str
    is_active: bool


class ResolveRequest(BaseModel):
    status: Literal["success", "failed"]
    note: str = ""


class ReconcileView(BaseModel):
    result: str
    order_no: Optional[str] = None
    status: Optional[str] = None
    detail: str = ""
