"""Provider integrations."""
from .base import (
    CaptureResult,
    InitiationResult,
    PaymentDetails,
    PaymentRequest,
    Provider,
    ProviderAdapter,
    RefundResult,
    WebhookEvent,
    WebhookEventType,
)
from .paypal_adapter import PayPalAdapter
from .registry import ProviderRegistry
from .stripe_adapter import StripeAdapter

__all__ = [
    "CaptureResult",
    "InitiationResult",
    "PaymentDetails",
    "PaymentRequest",
    "PayPalAdapter",
    "Provider",
    "ProviderAdapter",
    "ProviderRegistry",
    "RefundResult",
    "StripeAdapter",
    "WebhookEvent",
    "WebhookEventType",
]
