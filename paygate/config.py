from enum import Enum
from typing import Optional

from pydantic import AnyHttpUrl, BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewayType(str, Enum):
    BONDPAY = "bondpay"
    LGPAY = "lgpay"


class Direction(str, Enum):
    PAYIN = "payin"
    PAYOUT = "payout"


class OrderStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


order_prefix_map = {
    Direction.PAYIN: "PI",
    Direction.PAYOUT: "PO",
}


class GatewayDefinition(BaseModel):
    code: str
    gateway_type: GatewayType
    base_url: str
    app_id: str
    api_key: str
    payout_key: Optional[str] = None
    trade_type: Optional[str] = None
    currency: str = "INR"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    db_url: str = "sqlite:///./paygate.db"
    log_level: str = "INFO"
    bearer_token: Optional[str] = None
    public_base_url: AnyHttpUrl = "http://localhost:8000"
    gateways: list[GatewayDefinition] = [
        GatewayDefinition(
            code="bondpay",
            gateway_type=GatewayType.BONDPAY,
            base_url="http://mock-gateway:8001/bondpay",
            app_id="MASTER001",
            api_key="change_me",
            payout_key="change_me_payout",
        ),
    ]
    default_gateway_code: str = "bondpay"
    gateway_timeout_seconds: float = 15.0
    notify_max_attempts: int = 3
    notify_backoff_seconds: float = 1.0
    notify_timeout_seconds: float = 10.0
    outbox_poll_seconds: float = 2.0
    outbox_concurrency: int = 10
    outbox_worker_enabled: bool = True
    large_payin_threshold: int = 10000
    max_amount: int = 100_000_000
    pending_query_after_minutes: int = 10

    def gateway(self, code: Optional[str]) -> Optional[GatewayDefinition]:
        wanted = code or self.default_gateway_code
        for definition in self.gateways:
            if definition.code == wanted:
                return definition
        return None

    def callback_url_for(self, gateway_code: str) -> str:
        return str(self.public_base_url).rstrip("/") + f"/callbacks/{gateway_code}"


settings = Settings()
