import uuid
from sqlalchemy import Column, ForeignKey, String, Text, Uuid
from sqlalchemy.sql import func
from app.core.database import Base, UTCDateTime


class SubscriptionStatus:
    ACTIVE = "active"
    FAILED = "failed"


class Subscription(Base):
    """Push-notification subscription on one room mailbox."""

    __tablename__ = "graph_subscriptions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    room_id = Column(Uuid(as_uuid=True), ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False, index=True)
    room_email = Column(String, nullable=False, unique=True)
    subscription_id = Column(String, nullable=False, unique=True)
    expiration_date_time = Column(UTCDateTime(), nullable=False, index=True)
    client_state = Column(String, nullable=False)
    status = Column(String, nullable=False, default=SubscriptionStatus.ACTIVE)
    last_notification_at = Column(UTCDateTime(), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(UTCDateTime(), server_default=func.now())
