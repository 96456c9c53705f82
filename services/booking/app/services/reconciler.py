"""Turns Microsoft Graph change notifications into booking ledger changes.

Notifications carry only an event id and may arrive late, twice or out of
order, so every created/updated notification re-fetches the event and applies
its current state. The ``external_event_id`` of a booking is the join key:
redelivery converges on one booking per Outlook event.
"""

from __future__ import annotations

import hmac
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError
from app.models.booking import Booking, BookingStatus
from app.routers import crud, subscription_crud
from app.schemas.notification_schema import ChangeNotification
from app.services.graph_client import GraphClient, meeting_type_for_event, parse_graph_datetime
from shared import EventPublisher, bind_sync_context

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]

DEFAULT_TITLE = "Outlook Meeting"
SYNC_SOURCE = "calendar-sync"


class Outcome:
    UNKNOWN_SUBSCRIPTION = "unknown_subscription"
    CLIENT_STATE_MISMATCH = "client_state_mismatch"
    ROOM_NOT_FOUND = "room_not_found"
    MISSING_EVENT_ID = "missing_event_id"
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    CANCELLED = "cancelled"
    IGNORED = "ignored"
    CONFLICT_SKIPPED = "conflict_skipped"
    INVALID_EVENT = "invalid_event"
    ERROR = "error"


@dataclass
class SyncedEvent:
    """The parts of a Graph event that map onto a booking."""

    start_time: datetime
    end_time: datetime
    subject: Optional[str]
    meeting_type: str
    attendees: List[str] = field(default_factory=list)
    organizer_name: Optional[str] = None
    organizer_email: Optional[str] = None

    @property
    def organizer(self) -> str:
        return self.organizer_name or self.organizer_email or "Unknown"


def derive_booking_fields(event: Dict[str, Any], room_email: str) -> SyncedEvent:
    """Raises ``ValueError`` when the event has no usable start/end."""
    start = parse_graph_datetime(event.get("start"))
    end = parse_graph_datetime(event.get("end"))
    if end <= start:
        raise ValueError(f"event ends before it starts ({start.isoformat()} - {end.isoformat()})")

    room = (room_email or "").strip().lower()
    attendees: List[str] = []
    for attendee in event.get("attendees") or []:
        if attendee.get("type") == "resource":
            continue
        address = ((attendee.get("emailAddress") or {}).get("address") or "").strip()
        if not address or address.lower() == room or address in attendees:
            continue
        attendees.append(address)

    organizer = (event.get("organizer") or {}).get("emailAddress") or {}
    organizer_email = organizer.get("address") or None
    organizer_name = organizer.get("name") or None
    # events booked directly on the room mailbox list the room as organizer
    if organizer_email and organizer_email.strip().lower() == room:
        organizer_email = organizer_name = None

    return SyncedEvent(
        start_time=start,
        end_time=end,
        subject=event.get("subject") or None,
        meeting_type=meeting_type_for_event(event),
        attendees=attendees,
        organizer_name=organizer_name,
        organizer_email=organizer_email,
    )


def _client_state_matches(expected: str, received: Optional[str]) -> bool:
    return hmac.compare_digest((expected or "").encode(), (received or "").encode())


class NotificationReconciler:
    def __init__(
        self,
        session_factory: SessionFactory,
        graph: GraphClient,
        publisher: Optional[EventPublisher] = None,
    ) -> None:
        self._session_factory = session_factory
        self._graph = graph
        self._publisher = publisher

    async def process(self, notification: ChangeNotification) -> str:
        """Apply one notification. Never raises; failures land on ``last_error``."""
        change_type = notification.change_type
        with bind_sync_context(
            subscription_id=notification.subscription_id,
            change_type=change_type,
            event_id=notification.event_id,
        ):
            try:
                with self._session_factory() as db:
                    subscription = subscription_crud.find_by_subscription_id(db, notification.subscription_id)
                    if subscription is None:
                        logger.warning("Received notification for unknown subscription: %s", notification.subscription_id)
                        return Outcome.UNKNOWN_SUBSCRIPTION
                    if not _client_state_matches(subscription.client_state, notification.client_state):
                        logger.warning("Client state mismatch for subscription %s", notification.subscription_id)
                        return Outcome.CLIENT_STATE_MISMATCH
                    subscription_crud.record_notification(db, subscription)
                    room_email = subscription.room_email
            except Exception:
                logger.exception("Could not authenticate notification for %s", notification.subscription_id)
                return Outcome.ERROR

            try:
                return await self._dispatch(room_email, notification)
            except Exception as exc:
                logger.error(
                    "Error processing %s notification for event %s: %s",
                    change_type,
                    notification.event_id,
                    exc,
                    exc_info=True,
                )
                self._record_error(notification.subscription_id, f"{change_type} processing error: {exc}")
                return Outcome.ERROR

    async def process_batch(self, notifications: Iterable[ChangeNotification]) -> List[str]:
        outcomes = []
        for notification in notifications:
            outcomes.append(await self.process(notification))
        return outcomes

    def _record_error(self, subscription_id: str, message: str) -> None:
        try:
            with self._session_factory() as db:
                subscription_crud.record_error(db, subscription_id, message)
        except Exception:
            logger.exception("Could not record error on subscription %s", subscription_id)

    async def _dispatch(self, room_email: str, notification: ChangeNotification) -> str:
        with self._session_factory() as db:
            room = crud.get_room_by_graph_email(db, room_email)
            room_id = room.id if room else None
        if room_id is None:
            logger.warning("Room not found for subscription %s", room_email)
            return Outcome.ROOM_NOT_FOUND

        event_id = notification.event_id
        if not event_id:
            logger.warning("Notification missing event ID")
            return Outcome.MISSING_EVENT_ID

        if notification.change_type == "deleted":
            return self._handle_deleted(event_id)
        if notification.change_type in ("created", "updated"):
            return await self._handle_upsert(room_id, room_email, event_id)
        logger.info("Ignoring change type %s", notification.change_type)
        return Outcome.IGNORED

    def _handle_deleted(self, event_id: str) -> str:
        with self._session_factory() as db:
            booking = crud.find_by_external_event_id(db, event_id)
            if booking is None or booking.status != BookingStatus.CONFIRMED:
                return Outcome.IGNORED
            crud.cancel_booking(
                db,
                booking.id,
                actor_id=None,
                details="Auto-cancelled via Microsoft 365 webhook: event deleted from Outlook",
                publisher=self._publisher,
                source=SYNC_SOURCE,
            )
            logger.info("Auto-cancelled booking %s (Outlook event deleted)", booking.id)
            return Outcome.CANCELLED

    async def _handle_upsert(self, room_id: UUID, room_email: str, event_id: str) -> str:
        event = await self._graph.get_event(room_email, event_id)
        if event is None:
            logger.info("Event %s no longer exists; treating as deleted", event_id)
            return self._handle_deleted(event_id)
        if event.get("isCancelled"):
            return self._handle_deleted(event_id)
        return self._apply_event(room_id, room_email, event_id, event)

    def _apply_event(self, room_id: UUID, room_email: str, event_id: str, event: Dict[str, Any]) -> str:
        try:
            synced = derive_booking_fields(event, room_email)
        except ValueError as exc:
            logger.warning("Invalid dates in event %s: %s", event_id, exc)
            return Outcome.INVALID_EVENT

        with self._session_factory() as db:
            existing = crud.find_by_external_event_id(db, event_id)
            if existing is not None:
                return self._update_existing(db, existing, synced)

            if crud.check_conflict(db, room_id, synced.start_time, synced.end_time):
                logger.info("Skipping event %s: conflicts with existing booking", event_id)
                return Outcome.CONFLICT_SKIPPED

            try:
                booking = crud.create_booking(
                    db,
                    {
                        "room_id": room_id,
                        "user_id": None,
                        "title": synced.subject or DEFAULT_TITLE,
                        "description": f"Auto-synced from Outlook calendar. Organizer: {synced.organizer}",
                        "start_time": synced.start_time,
                        "end_time": synced.end_time,
                        "status": BookingStatus.CONFIRMED,
                        "meeting_type": synced.meeting_type,
                        "attendees": synced.attendees,
                        "booked_for_name": synced.organizer_name,
                        "booked_for_email": synced.organizer_email,
                        "external_event_id": event_id,
                    },
                    actor_id=None,
                    details=f'Auto-created via Microsoft 365 webhook: "{synced.subject or DEFAULT_TITLE}" by {synced.organizer}',
                    publisher=self._publisher,
                    source=SYNC_SOURCE,
                )
            except IntegrityError:
                # a concurrent delivery of the same event inserted first
                existing = crud.find_by_external_event_id(db, event_id)
                if existing is None:
                    raise
                logger.info("Event %s was inserted concurrently; applying as update", event_id)
                return self._update_existing(db, existing, synced)

            logger.info("Auto-created booking %s from Outlook event %s", booking.id, event_id)
            return Outcome.CREATED

    def _update_existing(self, db: Session, booking: Booking, synced: SyncedEvent) -> str:
        if booking.status == BookingStatus.CANCELLED:
            return Outcome.IGNORED

        fields: Dict[str, Any] = {
            "title": synced.subject or booking.title,
            "meeting_type": synced.meeting_type,
        }
        if synced.attendees:
            fields["attendees"] = synced.attendees
        if synced.organizer_email or synced.organizer_name:
            fields["booked_for_name"] = synced.organizer_name
            fields["booked_for_email"] = synced.organizer_email

        moved = synced.start_time != booking.start_time or synced.end_time != booking.end_time
        if moved:
            if crud.check_conflict(db, booking.room_id, synced.start_time, synced.end_time, exclude_id=booking.id):
                logger.warning(
                    "Outlook moved event of booking %s onto an occupied slot; keeping %s - %s",
                    booking.id,
                    booking.start_time.isoformat(),
                    booking.end_time.isoformat(),
                )
            else:
                fields["start_time"] = synced.start_time
                fields["end_time"] = synced.end_time

        result = crud.update_booking_from_external(
            db,
            booking.id,
            fields,
            details="Updated via Microsoft 365 webhook",
            publisher=self._publisher,
        )
        if result is None or not result.applied:
            return Outcome.IGNORED
        if not result.changed_fields:
            return Outcome.UNCHANGED
        logger.info("Updated booking %s from Outlook (%s)", booking.id, ", ".join(result.changed_fields))
        return Outcome.UPDATED

    async def sync_room_window(self, room_id: UUID, start: datetime, end: datetime) -> Dict[str, int]:
        """Replay every event of the room calendar in ``[start, end)``.

        Heals bookings missed while the room had no working subscription.
        """
        with self._session_factory() as db:
            room = crud.get_room(db, room_id)
            room_email = room.graph_room_email if room else None
        if not room_email:
            raise NotFoundError("Room", room_id)

        events = await self._graph.get_calendar_view(room_email, start, end)
        counts: Counter = Counter()
        with bind_sync_context(room_email=room_email):
            for event in events:
                event_id = event.get("id")
                if not event_id:
                    counts[Outcome.MISSING_EVENT_ID] += 1
                    continue
                try:
                    if event.get("isCancelled"):
                        outcome = self._handle_deleted(event_id)
                    else:
                        outcome = self._apply_event(room_id, room_email, event_id, event)
                except Exception:
                    logger.exception("Failed to sync event %s of %s", event_id, room_email)
                    outcome = Outcome.ERROR
                counts[outcome] += 1
        logger.info("Synced %d event(s) of %s: %s", len(events), room_email, dict(counts))
        return dict(counts)
