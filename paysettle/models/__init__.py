"""ORM models package."""
from .base import Base
from .payment import Payment, PaymentStatus
from .subscription import Subscription, SubscriptionStatus
from .user import User
from .webhook_event import WebhookEvent, WebhookEventStatus

__all__ = [
    "Base",
    "Payment",
    "PaymentStatus",
    "Subscription",
    "SubscriptionStatus",
    "User",
    "WebhookEvent",
    "WebhookEventStatus",
]
