from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from app.core.errors import ValidationError
from app.models.booking import AuditAction, AuditLog, Booking, BookingStatus
from app.models.room import Room
from shared import BOOKINGS_CHANGED, ROOMS_CHANGED, EventPublisher, notify_changed

# Fields the calendar sync may overwrite on an existing booking.
EXTERNAL_FIELDS = (
    "title",
    "description",
    "start_time",
    "end_time",
    "meeting_type",
    "attendees",
    "booked_for_name",
    "booked_for_email",
    "status",
)


@dataclass
class ExternalUpdate:
    booking: Booking
    applied: bool
    changed_fields: List[str] = field(default_factory=list)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _booking_payload(booking: Booking) -> Dict[str, Any]:
    return {
        "booking_id": str(booking.id),
        "room_id": str(booking.room_id),
        "status": booking.status,
        "start_time": booking.start_time.isoformat() if booking.start_time else None,
        "end_time": booking.end_time.isoformat() if booking.end_time else None,
        "external_event_id": booking.external_event_id,
    }


# ---------------------------------------------------------------------------
# Conflict detection
# ---------------------------------------------------------------------------

def _conflict_query(
    db: Session,
    room_id: UUID,
    start_time: datetime,
    end_time: datetime,
    exclude_id: Optional[UUID] = None,
):
    # [start, end) intervals: a booking ending exactly when another starts is fine
    query = (
        db.query(Booking)
        .filter(Booking.room_id == room_id)
        .filter(Booking.status == BookingStatus.CONFIRMED)
        .filter(Booking.end_time > _as_utc(start_time))
        .filter(Booking.start_time < _as_utc(end_time))
    )
    if exclude_id:
        query = query.filter(Booking.id != exclude_id)
    return query


def find_conflicts(
    db: Session,
    room_id: UUID,
    start_time: datetime,
    end_time: datetime,
    exclude_id: Optional[UUID] = None,
) -> List[Booking]:
    return (
        _conflict_query(db, room_id, start_time, end_time, exclude_id)
        .order_by(Booking.start_time.asc())
        .all()
    )


def check_conflict(
    db: Session,
    room_id: UUID,
    start_time: datetime,
    end_time: datetime,
    exclude_id: Optional[UUID] = None,
) -> bool:
    """Return True if a confirmed booking of ``room_id`` overlaps the interval.

    Both the booking API and the calendar reconciler go through this check, so
    the no-double-booking rule is enforced the same way on either path.
    """
    return db.query(
        _conflict_query(db, room_id, start_time, end_time, exclude_id).exists()
    ).scalar()


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

def create_audit_log(
    db: Session,
    action: str,
    *,
    entity_id: Optional[UUID],
    actor_id: Optional[UUID] = None,
    entity_type: str = "booking",
    details: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Stage an audit entry; it is committed together with the caller's change."""
    entry = AuditLog(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
        payload=payload or {},
    )
    db.add(entry)
    return entry


def list_audit_logs(
    db: Session,
    entity_id: Optional[UUID] = None,
    action: Optional[str] = None,
    limit: int = 100,
) -> List[AuditLog]:
    query = db.query(AuditLog)
    if entity_id:
        query = query.filter(AuditLog.entity_id == entity_id)
    if action:
        query = query.filter(AuditLog.action == action)
    return query.order_by(AuditLog.created_at.desc()).limit(limit).all()


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------

def create_booking(
    db: Session,
    data: Dict[str, Any],
    *,
    actor_id: Optional[UUID] = None,
    details: Optional[str] = None,
    publisher: Optional[EventPublisher] = None,
    source: str = "api",
) -> Booking:
    """Insert a booking, confirmed unless ``data`` says otherwise.

    Overlaps are not re-checked here: callers run :func:`check_conflict` first.
    A duplicate ``external_event_id`` raises :class:`IntegrityError` after the
    session has been rolled back.
    """
    values = {key: value for key, value in data.items() if value is not None}
    for required in ("room_id", "title", "start_time", "end_time"):
        if required not in values:
            raise ValidationError(f"{required} is required")
    values["start_time"] = _as_utc(values["start_time"])
    values["end_time"] = _as_utc(values["end_time"])
    if values["end_time"] <= values["start_time"]:
        raise ValidationError("end_time must be after start_time")
    values.setdefault("status", BookingStatus.CONFIRMED)
    if values["status"] not in BookingStatus.ALL:
        raise ValidationError(f"invalid status {values['status']!r}")
    values.setdefault("attendees", [])

    booking = Booking(**values)
    db.add(booking)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise

    create_audit_log(
        db,
        AuditAction.BOOKING_CREATED,
        entity_id=booking.id,
        actor_id=actor_id,
        details=details,
        payload=_booking_payload(booking),
    )
    db.commit()
    db.refresh(booking)

    notify_changed(publisher, BOOKINGS_CHANGED, {"action": "created", **_booking_payload(booking)}, source=source)
    return booking


def get_booking(db: Session, booking_id: UUID) -> Optional[Booking]:
    return db.query(Booking).filter(Booking.id == booking_id).first()


def find_by_external_event_id(db: Session, external_event_id: str) -> Optional[Booking]:
    if not external_event_id:
        return None
    return db.query(Booking).filter(Booking.external_event_id == external_event_id).first()


def list_bookings(
    db: Session,
    room_id: Optional[UUID] = None,
    user_id: Optional[UUID] = None,
    status: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> List[Booking]:
    query = db.query(Booking)
    if room_id:
        query = query.filter(Booking.room_id == room_id)
    if user_id:
        query = query.filter(Booking.user_id == user_id)
    if status:
        query = query.filter(Booking.status == status)
    if start_date:
        query = query.filter(Booking.end_time > _as_utc(start_date))
    if end_date:
        query = query.filter(Booking.start_time < _as_utc(end_date))
    return query.order_by(Booking.start_time.asc()).all()


def cancel_booking(
    db: Session,
    booking_id: UUID,
    *,
    actor_id: Optional[UUID] = None,
    details: Optional[str] = None,
    publisher: Optional[EventPublisher] = None,
    source: str = "api",
) -> Optional[Booking]:
    """Soft-cancel a booking. Cancelling twice leaves the first cancellation intact."""
    booking = get_booking(db, booking_id)
    if not booking:
        return None
    if booking.status == BookingStatus.CANCELLED:
        return booking

    booking.status = BookingStatus.CANCELLED
    booking.cancelled_at = datetime.now(timezone.utc)
    create_audit_log(
        db,
        AuditAction.BOOKING_CANCELLED,
        entity_id=booking.id,
        actor_id=actor_id,
        details=details,
        payload=_booking_payload(booking),
    )
    db.commit()
    db.refresh(booking)

    notify_changed(publisher, BOOKINGS_CHANGED, {"action": "cancelled", **_booking_payload(booking)}, source=source)
    return booking


def update_booking_from_external(
    db: Session,
    booking_id: UUID,
    fields: Dict[str, Any],
    *,
    details: Optional[str] = None,
    publisher: Optional[EventPublisher] = None,
) -> Optional[ExternalUpdate]:
    """Apply calendar-side changes to a booking.

    Only keys of :data:`EXTERNAL_FIELDS` are considered and ``status`` is left
    alone unless it is passed explicitly. A cancelled booking is never touched:
    the result then has ``applied=False`` so the caller can skip it.
    """
    booking = get_booking(db, booking_id)
    if not booking:
        return None
    if booking.status == BookingStatus.CANCELLED:
        return ExternalUpdate(booking=booking, applied=False)

    updates = {key: value for key, value in fields.items() if key in EXTERNAL_FIELDS}
    for key in ("start_time", "end_time"):
        if updates.get(key) is not None:
            updates[key] = _as_utc(updates[key])
    start = updates.get("start_time") or booking.start_time
    end = updates.get("end_time") or booking.end_time
    if end <= start:
        raise ValidationError("end_time must be after start_time")
    if "status" in updates and updates["status"] not in BookingStatus.ALL:
        raise ValidationError(f"invalid status {updates['status']!r}")

    changed = []
    for key, value in updates.items():
        if getattr(booking, key) != value:
            setattr(booking, key, value)
            changed.append(key)

    if not changed:
        return ExternalUpdate(booking=booking, applied=True)

    if booking.status == BookingStatus.CANCELLED and booking.cancelled_at is None:
        booking.cancelled_at = datetime.now(timezone.utc)
    create_audit_log(
        db,
        AuditAction.BOOKING_MODIFIED,
        entity_id=booking.id,
        details=details,
        payload={"changed_fields": changed, **_booking_payload(booking)},
    )
    db.commit()
    db.refresh(booking)

    notify_changed(
        publisher,
        BOOKINGS_CHANGED,
        {"action": "updated", "changed_fields": changed, **_booking_payload(booking)},
        source="calendar-sync",
    )
    return ExternalUpdate(booking=booking, applied=True, changed_fields=changed)


def set_external_event(
    db: Session,
    booking_id: UUID,
    external_event_id: str,
    online_meeting_url: Optional[str] = None,
) -> Optional[Booking]:
    """Link a booking created here to the calendar event created for it."""
    booking = get_booking(db, booking_id)
    if not booking:
        return None
    booking.external_event_id = external_event_id
    if online_meeting_url:
        booking.online_meeting_url = online_meeting_url
    db.commit()
    db.refresh(booking)
    return booking


# ---------------------------------------------------------------------------
# Rooms
# ---------------------------------------------------------------------------

def get_room(db: Session, room_id: UUID) -> Optional[Room]:
    return db.query(Room).filter(Room.id == room_id).first()


def get_room_by_graph_email(db: Session, email: str) -> Optional[Room]:
    if not email:
        return None
    return (
        db.query(Room)
        .filter(func.lower(Room.graph_room_email) == email.strip().lower())
        .first()
    )


def list_rooms(db: Session, include_inactive: bool = True) -> List[Room]:
    query = db.query(Room)
    if not include_inactive:
        query = query.filter(Room.is_active.is_(True))
    return query.order_by(Room.name.asc()).all()


def list_sync_rooms(db: Session) -> List[Room]:
    """Active rooms with a mailbox; rooms without one are never subscribed."""
    return (
        db.query(Room)
        .filter(Room.is_active.is_(True))
        .filter(Room.graph_room_email.isnot(None))
        .filter(Room.graph_room_email != "")
        .order_by(Room.name.asc())
        .all()
    )


def create_room(
    db: Session,
    data: Dict[str, Any],
    publisher: Optional[EventPublisher] = None,
) -> Room:
    room = Room(**data)
    db.add(room)
    db.commit()
    db.refresh(room)
    notify_changed(publisher, ROOMS_CHANGED, {"action": "created", "room_id": str(room.id)}, source="api")
    return room


def update_room(
    db: Session,
    room_id: UUID,
    data: Dict[str, Any],
    publisher: Optional[EventPublisher] = None,
) -> Optional[Room]:
    room = get_room(db, room_id)
    if not room:
        return None
    for key, value in data.items():
        setattr(room, key, value)
    db.commit()
    db.refresh(room)
    notify_changed(
        publisher,
        ROOMS_CHANGED,
        {"action": "updated", "room_id": str(room.id), "changes": list(data.keys())},
        source="api",
    )
    return room
