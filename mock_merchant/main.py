import logging
import os
from typing import List, Optional

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import JSON, Column, DateTime, Integer, String, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.sql import func

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("mock-merchant")

DB_URL = os.getenv("MOCK_MERCHANT_DB_URL", "sqlite:////data/merchant.db")
engine = create_engine(DB_URL, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

app = FastAPI(title="Mock Merchant")

# Answer the next N notifications with this status before accepting.
failure_plan = {"remaining": 0, "status_code": 500}


class Notification(BaseModel):
    order_no: str
    merchant_order_no: str
    direction: str
    status: str
    amount: str
    fee: str
    net_amount: str
    timestamp: str


class FailurePlan(BaseModel):
    count: int
    status_code: int = 500


class ReceivedNotification(Base):
    __tablename__ = "received_notifications"
    id = Column(Integer, primary_key=True)
    order_no = Column(String, index=True, nullable=False)
    merchant_order_no = Column(String, nullable=False)
    direction = Column(String, nullable=False)
    status = Column(String, nullable=False)
    amount = Column(String, nullable=False)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _serialize(record: ReceivedNotification) -> dict:
    return {
        "orderNo": record.order_no,
        "merchantOrderNo": record.merchant_order_no,
        "direction": record.direction,
        "status": record.status,
        "amount": record.amount,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
    }


@app.post("/notifications")
async def notifications(payload: Notification, db: Session = Depends(get_db)):
    logger.info(
        "Merchant received notification orderNo=%s direction=%s status=%s",
        payload.order_no,
        payload.direction,
        payload.status,
    )
    if failure_plan["remaining"] > 0:
        failure_plan["remaining"] -= 1
        logger.warning("Simulating failure status=%s remaining=%s", failure_plan["status_code"], failure_plan["remaining"])
        return JSONResponse(status_code=failure_plan["status_code"], content={"accepted": False})
    record = ReceivedNotification(
        order_no=payload.order_no,
        merchant_order_no=payload.merchant_order_no,
        direction=payload.direction,
        status=payload.status,
        amount=payload.amount,
        payload=payload.model_dump(),
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return {"accepted": True, "id": record.id}


@app.get("/notifications")
async def list_notifications(order_no: Optional[str] = None, db: Session = Depends(get_db)):
    query = db.query(ReceivedNotification)
    if order_no:
        query = query.filter(ReceivedNotification.order_no == order_no)
    records: List[ReceivedNotification] = query.order_by(ReceivedNotification.id).all()
    logger.info("Listing %s received notifications", len(records))
    return [_serialize(r) for r in records]


@app.post("/admin/fail-next")
async def fail_next(plan: FailurePlan):
    failure_plan["remaining"] = plan.count
    failure_plan["status_code"] = plan.status_code
    logger.warning("Next %s notifications will answer %s", plan.count, plan.status_code)
    return dict(failure_plan)


@app.post("/admin/clear-db")
async def clear_db(db: Session = Depends(get_db)):
    """
    Dangerous: clears all received notifications.
    """
    db.query(ReceivedNotification).delete()
    db.commit()
    failure_plan["remaining"] = 0
    logger.warning("Cleared mock merchant notifications via admin endpoint")
    return {"status": "cleared"}
