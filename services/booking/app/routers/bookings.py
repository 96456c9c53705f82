import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session
from app.core.auth_dependencies import TokenPayload, get_current_token
from app.core.database import get_db
from app.core.errors import ConflictError, NotFoundError, ProviderError, SyncError
from app.models.booking import BookingStatus
from app.schemas.booking_schema import (
    AttendeeOut,
    BookingAttendeesOut,
    BookingCancelRequest,
    BookingConflictResponse,
    BookingCreate,
    BookingOut,
)
from . import crud

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


def _graph(request: Request):
    graph = getattr(request.app.state, "graph_client", None)
    if graph is None or not graph.configured:
        return None
    return graph


@router.post(
    "/",
    response_model=BookingOut,
    status_code=201,
    responses={409: {"model": BookingConflictResponse}},
)
async def create_booking(
    payload: BookingCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_token: TokenPayload = Depends(get_current_token),
):
    room = crud.get_room(db, payload.room_id)
    if not room or not room.is_active:
        raise NotFoundError("Room", payload.room_id)

    # same overlap rule the calendar reconciler applies
    conflicts = crud.find_conflicts(db, payload.room_id, payload.start_time, payload.end_time)
    if conflicts:
        raise ConflictError(conflicts)

    publisher = getattr(request.app.state, "event_publisher", None)
    booking = crud.create_booking(
        db,
        {**payload.model_dump(), "user_id": current_token.sub},
        actor_id=current_token.sub,
        details=f'Booked "{payload.title}" in room {room.name}',
        publisher=publisher,
    )

    graph = _graph(request)
    if graph and room.graph_room_email and booking.status == BookingStatus.CONFIRMED:
        try:
            created = await graph.create_event(
                room.graph_room_email,
                booking.title,
                booking.start_time,
                booking.end_time,
                body=booking.description,
                meeting_type=booking.meeting_type,
                attendees=booking.attendees,
            )
        except SyncError as exc:
            logger.warning("Booking %s saved but Outlook event creation failed: %s", booking.id, exc)
        else:
            booking = crud.set_external_event(db, booking.id, created.event_id, created.join_url) or booking
    return booking


@router.get("/", response_model=List[BookingOut])
def list_bookings(
    room_id: Optional[UUID] = Query(None),
    user_id: Optional[UUID] = Query(None),
    status_param: Optional[str] = Query(None, alias="status"),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
    current_token: TokenPayload = Depends(get_current_token),
):
    if status_param and status_param not in BookingStatus.ALL:
        raise HTTPException(400, "Invalid status")
    return crud.list_bookings(
        db,
        room_id=room_id,
        user_id=user_id,
        status=status_param,
        start_date=start_date,
        end_date=end_date,
    )


@router.get("/{booking_id}", response_model=BookingOut)
def get_booking(
    booking_id: UUID,
    db: Session = Depends(get_db),
    current_token: TokenPayload = Depends(get_current_token),
):
    booking = crud.get_booking(db, booking_id)
    if not booking:
        raise NotFoundError("Booking", booking_id)
    return booking


@router.get("/{booking_id}/attendees", response_model=BookingAttendeesOut)
async def get_booking_attendees(
    booking_id: UUID,
    request: Request,
    db: Session = Depends(get_db),
    current_token: TokenPayload = Depends(get_current_token),
):
    """Attendee responses as Outlook sees them; falls back to the stored list."""
    booking = crud.get_booking(db, booking_id)
    if not booking:
        raise NotFoundError("Booking", booking_id)

    stored = BookingAttendeesOut(
        booking_id=booking.id,
        synced=False,
        attendees=[AttendeeOut(email=email) for email in booking.attendees or []],
    )
    room = crud.get_room(db, booking.room_id)
    graph = _graph(request)
    if not (graph and booking.external_event_id and room and room.graph_room_email):
        return stored

    try:
        details = await graph.get_event_details(room.graph_room_email, booking.external_event_id)
    except ProviderError as exc:
        logger.warning("Could not read attendees of event %s: %s", booking.external_event_id, exc)
        raise HTTPException(status.HTTP_502_BAD_GATEWAY, "Could not read attendee status from Microsoft 365")
    if details is None:
        return stored
    return BookingAttendeesOut(
        booking_id=booking.id,
        synced=True,
        room_response=details.room_response,
        attendees=[
            AttendeeOut(email=a.email, name=a.name or None, type=a.type, response=a.response)
            for a in details.attendees
        ],
    )


@router.patch("/{booking_id}/cancel", response_model=BookingOut)
async def cancel_booking(
    booking_id: UUID,
    request: Request,
    cancel_payload: Optional[BookingCancelRequest] = None,
    db: Session = Depends(get_db),
    current_token: TokenPayload = Depends(get_current_token),
):
    booking = crud.get_booking(db, booking_id)
    if not booking:
        raise NotFoundError("Booking", booking_id)

    if not current_token.is_admin and booking.user_id != current_token.sub:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only cancel your own bookings.",
        )

    was_confirmed = booking.status == BookingStatus.CONFIRMED
    reason = cancel_payload.reason if cancel_payload else None
    publisher = getattr(request.app.state, "event_publisher", None)
    booking = crud.cancel_booking(
        db,
        booking_id,
        actor_id=current_token.sub,
        details=reason or f"Cancelled booking: {booking.title}",
        publisher=publisher,
    )

    room = crud.get_room(db, booking.room_id)
    graph = _graph(request)
    if was_confirmed and graph and booking.external_event_id and room and room.graph_room_email:
        try:
            await graph.cancel_event(room.graph_room_email, booking.external_event_id)
        except SyncError as exc:
            logger.warning("Booking %s cancelled but Outlook event removal failed: %s", booking.id, exc)
    return booking
