from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field, computed_field


class SubscriptionOut(BaseModel):
    """A room mailbox subscription as shown to operators."""
    id: UUID
    room_id: UUID
    room_email: str
    subscription_id: str
    expiration_date_time: datetime
    status: str
    last_notification_at: Optional[datetime]
    last_error: Optional[str] = Field(description="Last processing or renewal error, for diagnosing stuck sync")
    created_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def is_expired(self) -> bool:
        expiration = self.expiration_date_time
        if expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)
        return expiration < datetime.now(timezone.utc)


class SubscriptionResultOut(BaseModel):
    success: bool
    error: Optional[str] = None
    subscription_id: Optional[str] = None
    renewed: bool = False


class BulkSubscribeOut(BaseModel):
    total: int
    success: int
    failed: int
    errors: List[str] = Field(default_factory=list)


class RenewalReportOut(BaseModel):
    renewed: int
    recreated: int
    failed: int
    errors: List[str] = Field(default_factory=list)


class RemoteDeleteOut(BaseModel):
    subscription_id: str
    attempted: bool
    ok: bool
    error: Optional[str] = None


class DisableRoomOut(BaseModel):
    room_id: UUID
    removed: int
    remote: List[RemoteDeleteOut] = Field(default_factory=list)


class RemoveAllOut(BaseModel):
    removed: int


class GraphStatusOut(BaseModel):
    configured: bool
    webhook_url: Optional[str]
    subscriptions: int
    active_subscriptions: int
    expired_subscriptions: int
    renewal_running: bool


class ConnectionTestOut(BaseModel):
    success: bool
    message: str
    room_count: int = 0


class GraphRoomOut(BaseModel):
    id: str
    email: str
    display_name: str
    capacity: Optional[int] = None
    building: Optional[str] = None
    floor_label: Optional[str] = None


class RoomSyncRequest(BaseModel):
    start: Optional[datetime] = Field(default=None, description="Window start; defaults to now")
    end: Optional[datetime] = Field(default=None, description="Window end; defaults to 14 days after start")


class RoomSyncOut(BaseModel):
    room_id: UUID
    events: int
    outcomes: dict
