from borrowpal.models.user import User
from borrowpal.models.listing import Listing, ListingStatus, PriceType
from borrowpal.models.order import Order, OrderStatus, PaymentMethod
from borrowpal.models.negotiation import Negotiation, NegotiationAction
from borrowpal.models.handover_code import HandoverCode, HandoverDirection
from borrowpal.models.order_event import OrderEvent
from borrowpal.models.payment_session import PaymentSession, PaymentSessionStatus
from borrowpal.models.notification import Notification
from borrowpal.models.platform_event import PlatformEvent
from borrowpal.models.webhook_event import WebhookEvent

__all__ = [
    "User",
    "Listing",
    "ListingStatus",
    "PriceType",
    "Order",
    "OrderStatus",
    "PaymentMethod",
    "Negotiation",
    "NegotiationAction",
    "HandoverCode",
    "HandoverDirection",
    "OrderEvent",
    "PaymentSession",
    "PaymentSessionStatus",
    "Notification",
    "PlatformEvent",
    "WebhookEvent",
]
