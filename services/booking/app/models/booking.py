import uuid
from sqlalchemy import JSON, Column, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.sql import func
from app.core.database import Base, UTCDateTime


class BookingStatus:
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    PENDING = "pending"

    ALL = {CONFIRMED, CANCELLED, PENDING}


class AuditAction:
    BOOKING_CREATED = "booking_created"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_MODIFIED = "booking_modified"


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_room_interval", "room_id", "status", "start_time", "end_time"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    room_id = Column(Uuid(as_uuid=True), ForeignKey("rooms.id"), nullable=False, index=True)
    # null for events that originated in the provider calendar
    user_id = Column(Uuid(as_uuid=True), nullable=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    start_time = Column(UTCDateTime(), nullable=False)
    end_time = Column(UTCDateTime(), nullable=False)
    status = Column(String, nullable=False, default=BookingStatus.CONFIRMED)
    meeting_type = Column(String, nullable=False, default="none")
    attendees = Column(JSON, nullable=False, default=list)

    external_event_id = Column(String, nullable=True, unique=True)
    online_meeting_url = Column(Text, nullable=True)
    booked_for_name = Column(String, nullable=True)
    booked_for_email = Column(String, nullable=True)

    cancelled_at = Column(UTCDateTime(), nullable=True)
    created_at = Column(UTCDateTime(), server_default=func.now())
    updated_at = Column(UTCDateTime(), server_default=func.now(), onupdate=func.now())


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # null when the change was made by calendar sync rather than a person
    actor_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False, default="booking")
    entity_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    details = Column(Text, nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(UTCDateTime(), server_default=func.now())
