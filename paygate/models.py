from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from paygate.database import Base


class Merchant(Base):
    __tablename__ = "merchants"
    id = Column(Integer, primary_key=True)
    account_number = Column(String, unique=True, index=True, nullable=False)
    merchant_name = Column(String, nullable=False)
    api_key = Column(String, nullable=False)
    payout_key = Column(String, nullable=False)
    payin_fee_bps = Column(Integer, nullable=False, default=0)
    payout_fee_bps = Column(Integer, nullable=False, default=0)
    gateway_code = Column(String, nullable=True)
    callback_url = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    available_balance_cents = Column(Integer, nullable=False, default=0)
    frozen_balance_cents = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    __table_args__ = (
        CheckConstraint("available_balance_cents >= 0", name="ck_available_non_negative"),
        CheckConstraint("frozen_balance_cents >= 0", name="ck_frozen_non_negative"),
    )


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True)
    order_no = Column(String, unique=True, index=True, nullable=False)
    merchant_order_no = Column(String, nullable=False)
    merchant_id = Column(Integer, ForeignKey("merchants.id"), index=True, nullable=False)
    direction = Column(String, nullable=False)  # payin|payout
    amount_cents = Column(Integer, nullable=False)
    fee_cents = Column(Integer, nullable=False)
    net_amount_cents = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="pending")
    gateway_code = Column(String, index=True, nullable=False)
    gateway_order_ref = Column(String, nullable=True)
    payment_url = Column(String, nullable=True)
    merchant_callback_url = Column(String, nullable=True)
    account_number = Column(String, nullable=True)
    account_name = Column(String, nullable=True)
    bank_name = Column(String, nullable=True)
    ifsc = Column(String, nullable=True)
    callback_payload = Column(JSON, nullable=True)
    signature_verified = Column(Boolean, nullable=True)
    needs_review = Column(Boolean, nullable=False, default=False)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    submit_attempts = Column(Integer, nullable=False, default=0)
    last_submit_error = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    finalized_at = Column(DateTime(timezone=True), nullable=True)

    merchant = relationship("Merchant")
    __table_args__ = (UniqueConstraint("merchant_id", "merchant_order_no", name="uq_merchant_order_no"),)


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True, nullable=False)
    merchant_id = Column(Integer, ForeignKey("merchants.id"), index=True, nullable=False)
    reason = Column(String, nullable=False)
    available_delta_cents = Column(Integer, nullable=False, default=0)
    frozen_delta_cents = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    __table_args__ = (UniqueConstraint("order_id", "reason", name="uq_order_reason"),)


class AuditEntry(Base):
    __tablename__ = "audit_entries"
    id = Column(Integer, primary_key=True)
    kind = Column(String, index=True, nullable=False)
    order_no = Column(String, index=True, nullable=True)
    gateway_code = Column(String, nullable=True)
    detail = Column(String, nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class MerchantNotification(Base):
    __tablename__ = "merchant_notifications"
    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True, nullable=False)
    event_type = Column(String, nullable=False)
    target_url = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(String, nullable=False, default="pending")
    attempt_count = Column(Integer, default=0)
    next_attempt_at = Column(DateTime(timezone=True), server_default=func.now())
    last_error = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
