from typing import Callable, Optional

import httpx

from paygate.config import GatewayType, Settings
from paygate.errors import GatewayError
from paygate.gateways.base import GatewayAdapter
from paygate.gateways.bondpay import BondPayAdapter
from paygate.gateways.lgpay import LGPayAdapter

adapter_registry: dict[GatewayType, type[GatewayAdapter]] = {
    GatewayType.BONDPAY: BondPayAdapter,
    GatewayType.LGPAY: LGPayAdapter,
}

AdapterFactory = Callable[[str], GatewayAdapter]


def build_adapter(
    gateway_code: str,
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> GatewayAdapter:
    definition = settings.gateway(gateway_code)
    if definition is None:
        raise GatewayError(f"unknown gateway {gateway_code!r}", gateway_code=gateway_code)
    adapter_cls = adapter_registry[definition.gateway_type]
    return adapter_cls(
        definition,
        notify_url=settings.callback_url_for(definition.code),
        timeout=settings.gateway_timeout_seconds,
        transport=transport,
    )


def adapter_factory(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> AdapterFactory:
    def factory(gateway_code: str) -> GatewayAdapter:
        return build_adapter(gateway_code, settings, transport)

    return factory
