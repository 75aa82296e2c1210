from __future__ import annotations

from tagpush.core.config import Settings, get_settings
from tagpush.core.errors import GatewayConfigError
from tagpush.providers.push.apns import APNsGateway
from tagpush.providers.push.base import PushGateway
from tagpush.providers.push.fake import FakePushGateway


def get_push_gateway(settings: Settings | None = None) -> PushGateway:
    settings = settings or get_settings()
    provider = (settings.push_gateway_provider or "").lower()

    if provider == "fake":
        return FakePushGateway()
    if provider == "apns":
        return APNsGateway(settings)

    raise GatewayConfigError(f"Unsupported push gateway provider: {provider}")
