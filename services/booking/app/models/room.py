import uuid
from sqlalchemy import Boolean, Column, Integer, String, Uuid
from sqlalchemy.sql import func
from app.core.database import Base, UTCDateTime


class Room(Base):
    __tablename__ = "rooms"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    capacity = Column(Integer, nullable=False, default=0)
    floor = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    # mailbox of the room in Microsoft 365; rooms without one are never synced
    graph_room_email = Column(String, nullable=True, index=True)

    created_at = Column(UTCDateTime(), server_default=func.now())
    updated_at = Column(UTCDateTime(), server_default=func.now(), onupdate=func.now())
