from rentdesk.models.user import User
from rentdesk.models.subscription import Subscription
from rentdesk.models.subscription_payment import SubscriptionPayment
from rentdesk.models.webhook_event import WebhookEvent

__all__ = [
    "User",
    "Subscription",
    "SubscriptionPayment",
    "WebhookEvent",
]
