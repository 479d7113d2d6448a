from gamemarket.models.user import User
from gamemarket.models.listing import Listing
from gamemarket.models.offer import Offer
from gamemarket.models.order import Order
from gamemarket.models.payment import Payment
from gamemarket.models.notification import Notification

__all__ = [
    "User",
    "Listing",
    "Offer",
    "Order",
    "Payment",
    "Notification",
]
