"""Channel adapters for the outbound chat channel."""
from channels.base import (
    ChannelAdapter,
    ChannelError,
    ChannelMetrics,
    CircuitBreaker,
    CircuitOpenError,
    InputSanitizer,
    RateLimitedError,
    TokenBucketRateLimiter,
)
from channels.whatsapp_adapter import WhatsAppAdapter

__all__ = [
    "ChannelAdapter", "ChannelError", "RateLimitedError", "CircuitOpenError",
    "TokenBucketRateLimiter", "CircuitBreaker", "ChannelMetrics", "InputSanitizer",
    "WhatsAppAdapter",
]
