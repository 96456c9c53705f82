import logging
from typing import List
from uuid import UUID
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from app.core.auth_dependencies import TokenPayload, get_current_token, require_admin
from app.core.database import get_db
from app.core.errors import NotFoundError
from app.schemas.room_schema import RoomCreate, RoomOut, RoomUpdate
from . import crud

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rooms", tags=["Rooms"])


@router.get("/", response_model=List[RoomOut])
def list_rooms(
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    _: TokenPayload = Depends(get_current_token),
):
    return crud.list_rooms(db, include_inactive=include_inactive)


@router.get("/{room_id}", response_model=RoomOut)
def get_room(
    room_id: UUID,
    db: Session = Depends(get_db),
    _: TokenPayload = Depends(get_current_token),
):
    room = crud.get_room(db, room_id)
    if not room:
        raise NotFoundError("Room", room_id)
    return room


@router.post("/", response_model=RoomOut, status_code=201)
def create_room(
    payload: RoomCreate,
    request: Request,
    db: Session = Depends(get_db),
    _: TokenPayload = Depends(require_admin),
):
    publisher = getattr(request.app.state, "event_publisher", None)
    return crud.create_room(db, payload.model_dump(), publisher=publisher)


@router.patch("/{room_id}", response_model=RoomOut)
async def update_room(
    room_id: UUID,
    payload: RoomUpdate,
    request: Request,
    db: Session = Depends(get_db),
    _: TokenPayload = Depends(require_admin),
):
    """Update a room. Changing or clearing its mailbox, or deactivating it, stops calendar sync."""
    room = crud.get_room(db, room_id)
    if not room:
        raise NotFoundError("Room", room_id)

    changes = payload.model_dump(exclude_unset=True)
    mailbox_changed = "graph_room_email" in changes and changes["graph_room_email"] != room.graph_room_email
    deactivated = changes.get("is_active") is False and room.is_active
    if (mailbox_changed or deactivated) and room.graph_room_email:
        results = await request.app.state.subscription_manager.disable_for_room(room_id)
        if results:
            logger.info("Calendar sync disabled for room %s (%d subscription(s) removed)", room_id, len(results))

    publisher = getattr(request.app.state, "event_publisher", None)
    return crud.update_room(db, room_id, changes, publisher=publisher)
