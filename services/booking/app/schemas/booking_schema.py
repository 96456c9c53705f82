from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field, field_validator
from app.models.booking import BookingStatus


class BookingBase(BaseModel):
    """Base schema for room bookings."""
    room_id: UUID = Field(description="Room being booked", examples=["660e8400-e29b-41d4-a716-446655440001"])
    title: str = Field(min_length=1, max_length=255, description="Meeting subject", examples=["Quarterly planning"])
    description: Optional[str] = Field(default=None, description="Free-text notes, copied into the calendar event body")
    start_time: datetime = Field(description="ISO 8601 start with offset (e.g. 2025-12-05T14:00:00-03:00). Values without an offset are taken as UTC.", examples=["2025-12-15T14:00:00-03:00"])
    end_time: datetime = Field(description="ISO 8601 end with offset. Values without an offset are taken as UTC.", examples=["2025-12-15T15:00:00-03:00"])
    meeting_type: str = Field(default="none", description="none, Teams Meeting, Zoom or Google Meet", examples=["Teams Meeting"])
    attendees: List[str] = Field(default_factory=list, description="Attendee e-mail addresses", examples=[["ana@example.com"]])
    booked_for_name: Optional[str] = Field(default=None, description="Person the booking was made on behalf of")
    booked_for_email: Optional[str] = Field(default=None, description="E-mail of the person the booking was made on behalf of")

    @field_validator("start_time", "end_time")
    @classmethod
    def ensure_timezone_aware(cls, value: datetime) -> datetime:
        """Attach UTC to naive values, never local time."""
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @field_validator("end_time")
    @classmethod
    def validate_interval(cls, end_time, info):
        start_time = info.data.get("start_time")
        if start_time and end_time <= start_time:
            raise ValueError("end_time must be after start_time")
        return end_time

    @field_validator("attendees")
    @classmethod
    def normalize_attendees(cls, value: List[str]) -> List[str]:
        cleaned = []
        for email in value:
            email = email.strip()
            if email and email not in cleaned:
                cleaned.append(email)
        return cleaned


class BookingCreate(BookingBase):
    status: Optional[str] = Field(default=BookingStatus.CONFIRMED, description="Initial status (confirmed or pending)")

    @field_validator("status")
    @classmethod
    def validate_status(cls, value):
        if value not in BookingStatus.ALL:
            raise ValueError("Invalid status")
        return value


class BookingOut(BaseModel):
    """Full representation of a booking."""
    id: UUID
    room_id: UUID
    user_id: Optional[UUID] = Field(description="Owner; null for bookings created from the room calendar")
    title: str
    description: Optional[str]
    start_time: datetime
    end_time: datetime
    status: str
    meeting_type: str
    attendees: List[str]
    external_event_id: Optional[str] = Field(description="Id of the linked Outlook event")
    online_meeting_url: Optional[str]
    booked_for_name: Optional[str]
    booked_for_email: Optional[str]
    cancelled_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class BookingCancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500, description="Cancellation reason (optional)")


class BookingConflict(BaseModel):
    """An existing booking that overlaps the requested interval."""
    booking_id: UUID
    title: str
    start_time: datetime
    end_time: datetime


class BookingConflictResponse(BaseModel):
    """Error body for HTTP 409."""
    success: bool = Field(description="Always false for conflicts")
    error: str = Field(description="Error kind: 'conflict'")
    message: str
    conflicts: list[BookingConflict]


class AttendeeOut(BaseModel):
    email: str
    name: Optional[str] = None
    type: str = "required"
    response: str = "none"


class BookingAttendeesOut(BaseModel):
    """Attendee response statuses read back from the room calendar."""
    booking_id: UUID
    synced: bool = Field(description="False when the booking has no linked calendar event")
    room_response: Optional[str] = None
    attendees: list[AttendeeOut] = Field(default_factory=list)


class AuditLogOut(BaseModel):
    id: UUID
    actor_id: Optional[UUID]
    action: str
    entity_type: str
    entity_id: Optional[UUID]
    details: Optional[str]
    payload: dict
    created_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)
