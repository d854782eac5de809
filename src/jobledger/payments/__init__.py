"""Payment gateway port and webhook processing."""

from jobledger.payments.gateway import InMemoryGateway, PaymentGateway, PaymentVerification
from jobledger.payments.webhooks import WebhookEvent, WebhookProcessor

__all__ = [
    "InMemoryGateway",
    "PaymentGateway",
    "PaymentVerification",
    "WebhookEvent",
    "WebhookProcessor",
]
