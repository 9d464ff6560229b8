import hashlib
import hmac
from typing import Any, Iterable, Mapping, Optional

from fastapi import Header, HTTPException

from paygate.config import settings

SIGN_FIELD = "sign"


def _md5_hex(message: str) -> str:
    return hashlib.md5(message.encode("utf-8")).hexdigest()


def signature_matches(expected: str, signature: Optional[str]) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(expected.lower(), str(signature).strip().lower())


def concat_md5(values: Iterable[Any]) -> str:
    """
    md5 over the values joined with no separator, in the order given.

    The order is fixed by each scheme (not sorted) and the secret sits
    wherever that scheme puts it; ``None`` contributes an empty string.
    """
    return _md5_hex("".join("" if v is None else str(v) for v in values))


def verify_concat_md5(values: Iterable[Any], signature: Optional[str]) -> bool:
    return signature_matches(concat_md5(values), signature)


def sorted_query_string(params: Mapping[str, Any]) -> str:
    filtered = {
        k: v
        for k, v in params.items()
        if k != SIGN_FIELD and v is not None and str(v) != ""
    }
    # Byte-wise ordering: digits < uppercase < lowercase.
    keys = sorted(filtered, key=lambda k: k.encode("utf-8"))
    return "&".join(f"{k}={filtered[k]}" for k in keys)


def sorted_query_md5(params: Mapping[str, Any], secret: str) -> str:
    """
    Wallet-style signature: ``UPPER(md5("a=1&b=2&key=<secret>"))``.
    Empty values and the ``sign`` field itself are left out.
    """
    return _md5_hex(f"{sorted_query_string(params)}&key={secret}").upper()


def verify_sorted_query_md5(params: Mapping[str, Any], secret: str, signature: Optional[str]) -> bool:
    return signature_matches(sorted_query_md5(params, secret), signature)


# Merchant-facing schemes. Field order matches the published SDKs.

def payin_request_signature(merchant_id: str, amount: str, merchant_order_no: str, api_key: str, callback_url: str) -> str:
    return concat_md5([merchant_id, amount, merchant_order_no, api_key, callback_url])


def payout_request_signature(
    account_number: str,
    amount: str,
    bank_name: str,
    callback_url: str,
    ifsc: str,
    merchant_id: str,
    name: str,
    transaction_id: str,
    payout_key: str,
) -> str:
    return concat_md5(
        [account_number, amount, bank_name, callback_url, ifsc, merchant_id, name, transaction_id, payout_key]
    )


def order_query_signature(merchant_id: str, order_no: str, api_key: str) -> str:
    return concat_md5([merchant_id, order_no, api_key])


def require_bearer_token(authorization: str | None = Header(None, alias="Authorization")):
    """
    FastAPI dependency enforcing ``Authorization: Bearer <token>`` on admin
    routes when a token is configured.
    """
    if not settings.bearer_token:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(token, settings.bearer_token):
        raise HTTPException(status_code=401, detail="Unauthorized")
