"""Outbound gateways and their shared resilience infrastructure."""
from channels.base import (
    MessageGateway,
    TokenBucketRateLimiter,
    CircuitBreaker,
    GatewayMetrics,
)
from channels.mock_gateway import MockGateway, RecordedSend
from channels.twilio_gateway import TwilioWhatsAppGateway
from channels.factory import create_gateway

__all__ = [
    "MessageGateway", "TokenBucketRateLimiter", "CircuitBreaker", "GatewayMetrics",
    "MockGateway", "RecordedSend", "TwilioWhatsAppGateway", "create_gateway",
]
