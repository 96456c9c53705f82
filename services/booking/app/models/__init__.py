from app.models.booking import AuditAction, AuditLog, Booking, BookingStatus
from app.models.room import Room
from app.models.subscription import Subscription, SubscriptionStatus

__all__ = [
    "AuditAction",
    "AuditLog",
    "Booking",
    "BookingStatus",
    "Room",
    "Subscription",
    "SubscriptionStatus",
]
