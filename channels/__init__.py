"""Messaging gateways for outbound pages and texts."""
from channels.base import (
    ChannelError,
    GatewayError,
    InMemoryGateway,
    MessagingGateway,
    PerSenderRateLimiter,
    PhoneNumber,
    SentText,
    TokenBucketRateLimiter,
    UnknownPhoneCategoryError,
)
from channels.twilio_sms import TwilioSmsGateway

__all__ = [
    "ChannelError", "GatewayError", "UnknownPhoneCategoryError",
    "MessagingGateway", "InMemoryGateway", "TwilioSmsGateway",
    "PhoneNumber", "SentText", "TokenBucketRateLimiter", "PerSenderRateLimiter",
]
