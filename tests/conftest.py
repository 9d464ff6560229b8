import asyncio
import sys
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from paygate import database  # noqa: E402
from paygate.config import GatewayDefinition, GatewayType, settings  # noqa: E402
from paygate.gateways import adapter_factory  # noqa: E402
from paygate.models import Base, Merchant  # noqa: E402
from paygate.reconciliation import ReconciliationEngine  # noqa: E402

BONDPAY = GatewayDefinition(
    code="bondpay",
    gateway_type=GatewayType.BONDPAY,
    base_url="http://bondpay.test",
    app_id="MASTER001",
    api_key="bp_key",
    payout_key="bp_payout_key",
)
LGPAY = GatewayDefinition(
    code="lgpay",
    gateway_type=GatewayType.LGPAY,
    base_url="http://lgpay.test",
    app_id="LG001",
    api_key="lg_key",
    trade_type="INRUPI",
)


class FakeGateway:
    """
    Answers adapter HTTP calls by path and records every request sent.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes = {}
        self.respond("/v1/create", json={"status": "success", "orderNo": "BP-1", "payment_url": "https://pay.test/BP-1"})
        self.respond("/payout/payment.php", json={"status": "success", "orderNo": "BPO-1"})
        self.respond("/v1/query", json={"status": "pending"})
        self.respond(
            "/api/order/create",
            json={"status": 1, "msg": "success", "data": {"order_no": "LG-1", "pay_url": "https://pay.test/LG-1"}},
        )
        self.respond("/api/deposit/create", json={"status": 1, "msg": "success", "data": {"order_no": "LGO-1"}})
        self.respond("/api/order/query", json={"status": 1, "msg": "success", "data": {"status": 1}})

    def respond(self, path, status_code=200, json=None, text=None, exc=None):
        def route(request):
            if exc is not None:
                raise exc(f"simulated {exc.__name__}", request=request)
            if text is not None:
                return httpx.Response(status_code, text=text)
            return httpx.Response(status_code, json=json)

        self.routes[path] = route

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"message": "no route"})
        return route(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def sent_to(self, path):
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture
def run():
    def _run(coro):
        loop = asyncio.new_event_loop()
        try:
            return loop.run_until_complete(coro)
        finally:
            loop.close()

    return _run


@pytest.fixture
def db_engine(tmp_path, monkeypatch):
    """
    Point the hub at a disposable SQLite DB with both gateways configured
    and the background outbox worker disabled.
    """
    monkeypatch.setattr(settings, "gateways", [BONDPAY, LGPAY])
    monkeypatch.setattr(settings, "default_gateway_code", "bondpay")
    monkeypatch.setattr(settings, "outbox_worker_enabled", False)
    monkeypatch.setattr(settings, "bearer_token", "testtoken")
    monkeypatch.setattr(settings, "public_base_url", "http://hub.test")
    monkeypatch.setattr(settings, "large_payin_threshold", 10000)
    engine = database.configure_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(db_engine):
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def engine(db_engine, gateway):
    snapshot = settings.model_copy()
    return ReconciliationEngine(snapshot, adapter_factory(snapshot, gateway.transport))


@pytest.fixture
def client(engine):
    import paygate.main as main

    main.app.dependency_overrides[main.get_engine] = lambda: engine
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"Authorization": "Bearer testtoken"}


@pytest.fixture
def merchant_factory(db):
    def make(
        account_number="M1001",
        available_cents=0,
        payin_fee_bps=300,
        payout_fee_bps=200,
        gateway_code="bondpay",
        callback_url="http://merchant.test/notify",
        is_active=True,
    ):
        merchant = Merchant(
            account_number=account_number,
            merchant_name=f"Merchant {account_number}",
            api_key=f"{account_number}-api",
            payout_key=f"{account_number}-payout",
            payin_fee_bps=payin_fee_bps,
            payout_fee_bps=payout_fee_bps,
            gateway_code=gateway_code,
            callback_url=callback_url,
            is_active=is_active,
            available_balance_cents=available_cents,
            frozen_balance_cents=0,
        )
        db.add(merchant)
        db.commit()
        db.refresh(merchant)
        return merchant

    return make
