from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from paygate.logging_config import get_logger
from paygate.models import AuditEntry

logger = get_logger("paygate.audit")


class AuditKind(str, Enum):
    UNKNOWN_ORDER = "unknown_order"
    DUPLICATE_CALLBACK = "duplicate_callback"
    UNVERIFIED_SIGNATURE = "unverified_signature"
    AMBIGUOUS_STATUS = "ambiguous_status"
    MALFORMED_CALLBACK = "malformed_callback"
    AMOUNT_MISMATCH = "amount_mismatch"
    SUBMISSION_ERROR = "submission_error"
    DELIVERY_FAILED = "delivery_failed"
    LARGE_PAYIN = "large_payin"
    MANUAL_RESOLUTION = "manual_resolution"


def record_audit(
    db: Session,
    kind: AuditKind,
    detail: str,
    order_no: Optional[str] = None,
    gateway_code: Optional[str] = None,
    payload: Optional[dict] = None,
) -> AuditEntry:
    """
    Stage an audit row on ``db``; the caller owns the commit.
    """
    entry = AuditEntry(
        kind=kind.value,
        order_no=order_no,
        gateway_code=gateway_code,
        detail=detail,
        payload=payload,
    )
    db.add(entry)
    logger.warning(
        "Audit kind=%s orderNo=%s gateway=%s detail=%s",
        kind.value,
        order_no,
        gateway_code,
        detail,
    )
    return entry
