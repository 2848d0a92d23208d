"""
Gateway Factory — instantiates the configured outbound gateway.

settings.yaml:
    gateway:
      provider: "twilio"        # "twilio" | "mock"
      timeout_seconds: 15
      credentials:
        account_sid: "${TWILIO_ACCOUNT_SID}"
        auth_token: "${TWILIO_AUTH_TOKEN}"
        from_number: "${TWILIO_WHATSAPP_NUMBER}"
"""
from __future__ import annotations

import structlog

from channels.base import MessageGateway
from config.settings import GatewayConfig

logger = structlog.get_logger()

_PROVIDERS = ("twilio", "mock")


def create_gateway(config: GatewayConfig) -> MessageGateway:
    """
    Raises:
        ValueError: unknown provider, or Twilio selected without credentials.
    """
    provider = (config.provider or "mock").lower()

    if provider == "twilio":
        from channels.twilio_gateway import TwilioWhatsAppGateway
        creds = config.credentials or {}
        missing = [k for k in ("account_sid", "auth_token", "from_number")
                   if not creds.get(k) or str(creds[k]).startswith("${")]
        if missing:
            raise ValueError(f"Twilio gateway missing credentials: {', '.join(missing)}")
        gateway = TwilioWhatsAppGateway(
            account_sid=creds["account_sid"],
            auth_token=creds["auth_token"],
            from_number=creds["from_number"],
            timeout_seconds=config.timeout_seconds,
        )
        logger.info("gateway_created", provider="twilio", from_number=creds["from_number"])
        return gateway

    if provider == "mock":
        from channels.mock_gateway import MockGateway
        logger.info("gateway_created", provider="mock")
        return MockGateway()

    raise ValueError(
        f"Unsupported gateway provider: {config.provider}. Supported: {', '.join(_PROVIDERS)}"
    )
