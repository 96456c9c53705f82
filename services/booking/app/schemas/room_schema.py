from datetime import datetime
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field, field_validator


def _normalize_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip().lower()
    return value or None


class RoomCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120, examples=["Pacific"])
    capacity: int = Field(default=0, ge=0, examples=[8])
    floor: Optional[str] = Field(default=None, examples=["3"])
    is_active: bool = True
    graph_room_email: Optional[str] = Field(default=None, description="Room mailbox in Microsoft 365; enables calendar sync", examples=["pacific@contoso.com"])

    @field_validator("graph_room_email")
    @classmethod
    def normalize_email(cls, value):
        return _normalize_email(value)


class RoomUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    capacity: Optional[int] = Field(default=None, ge=0)
    floor: Optional[str] = None
    is_active: Optional[bool] = None
    graph_room_email: Optional[str] = Field(default=None, description="Empty string clears the mailbox and disables sync")

    @field_validator("graph_room_email")
    @classmethod
    def normalize_email(cls, value):
        return _normalize_email(value)


class RoomOut(BaseModel):
    id: UUID
    name: str
    capacity: int
    floor: Optional[str]
    is_active: bool
    graph_room_email: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)
