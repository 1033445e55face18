from app.models.user import User
from app.models.order import Order, OrderRead
from app.models.subscription import SubscriptionStatus, UserSubscription, UserSubscriptionRead
from app.models.webhook_event import WebhookEvent, WebhookEventStatus

__all__ = [
    "User",
    "Order", "OrderRead",
    "SubscriptionStatus", "UserSubscription", "UserSubscriptionRead",
    "WebhookEvent", "WebhookEventStatus",
]
