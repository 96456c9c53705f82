"""Microsoft Graph adapter for room mailboxes.

Client-credentials authentication, calendar events on room mailboxes and the
push-notification subscriptions that keep the booking ledger in sync with
Outlook. Every non-2xx answer surfaces as :class:`ProviderError`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx
from dateutil import tz
from dateutil.parser import isoparse

from app.core.errors import NotConfiguredError, ProviderError
from shared import GraphConfig

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
LOGIN_BASE_URL = "https://login.microsoftonline.com"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"

TEAMS_PROVIDER = "teamsForBusiness"
TEAMS_MEETING = "Teams Meeting"
NO_MEETING = "none"

DEFAULT_SUBSCRIPTION_MINUTES = 4200
SUBSCRIPTION_CHANGE_TYPES = "created,updated,deleted"

EVENT_FIELDS = "id,subject,start,end,organizer,attendees,isOnlineMeeting,onlineMeetingProvider,isCancelled"
_UTC_PREFERENCE = {"Prefer": 'outlook.timezone="UTC"'}
_TOKEN_REFRESH_MARGIN = 60.0

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class GraphRoom:
    id: str
    email: str
    display_name: str
    capacity: int = 0
    building: Optional[str] = None
    floor_number: Optional[int] = None
    floor_label: Optional[str] = None


@dataclass
class CreatedEvent:
    event_id: str
    join_url: Optional[str] = None


@dataclass
class CreatedSubscription:
    subscription_id: str
    expiration: datetime


@dataclass
class AttendeeStatus:
    email: str
    name: str = ""
    type: str = "required"
    response: str = "none"


@dataclass
class EventDetails:
    room_response: str
    room_email: Optional[str]
    attendees: List[AttendeeStatus] = field(default_factory=list)


def parse_graph_datetime(value: Any) -> datetime:
    """Parse a Graph ``dateTimeTimeZone`` (or a bare ISO string) into aware UTC.

    Graph returns wall-clock strings without an offset, e.g.
    ``2024-01-01T15:00:00.0000000``. A value without offset is anchored to the
    zone named next to it, UTC by default, and never to the server's local time.
    """
    zone_name = None
    if isinstance(value, dict):
        zone_name = value.get("timeZone")
        value = value.get("dateTime")
    if not value or not isinstance(value, str):
        raise ValueError(f"invalid Graph datetime: {value!r}")

    parsed = isoparse(value.strip())
    if parsed.tzinfo is None:
        zone = tz.gettz(zone_name) if zone_name and zone_name.upper() != "UTC" else None
        parsed = parsed.replace(tzinfo=zone or timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_graph_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(tzinfo=None).isoformat()


def is_teams_meeting_type(meeting_type: Optional[str]) -> bool:
    return (meeting_type or "").strip().lower() in ("teams", "teams meeting")


def meeting_type_for_event(event: Dict[str, Any]) -> str:
    if event.get("isOnlineMeeting") and event.get("onlineMeetingProvider") == TEAMS_PROVIDER:
        return TEAMS_MEETING
    return NO_MEETING


def _mailbox(email: str) -> str:
    return quote(email.strip(), safe="@")


def _event_body(subject: str, body: Optional[str], meeting_type: Optional[str]) -> str:
    text = body or ""
    kind = (meeting_type or "").strip().lower()
    if kind == "zoom" and "zoom" not in text:
        text += "\n\nMeeting Type: Zoom - Please use the Zoom link provided separately."
    elif kind == "google meet" and "meet.google" not in text:
        text += "\n\nMeeting Type: Google Meet - Please use the Google Meet link provided separately."
    return text or f"Meeting: {subject}"


class ClientCredentialsTokenProvider:
    """App-only access token for Graph, cached until shortly before it expires.

    Concurrent callers wait on one acquisition instead of each requesting a token.
    """

    def __init__(self, config: GraphConfig, *, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._monotonic = monotonic
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def token_url(self) -> str:
        return f"{LOGIN_BASE_URL}/{self._config.tenant_id}/oauth2/v2.0/token"

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

    def _valid(self) -> bool:
        return self._token is not None and self._monotonic() < self._expires_at - _TOKEN_REFRESH_MARGIN

    async def get_token(self, client: httpx.AsyncClient) -> str:
        if self._valid():
            return self._token
        async with self._lock:
            if self._valid():
                return self._token
            if not self._config.configured:
                raise NotConfiguredError()

            response = await client.post(
                self.token_url,
                data={
                    "client_id": self._config.client_id,
                    "client_secret": self._config.client_secret,
                    "scope": GRAPH_SCOPE,
                    "grant_type": "client_credentials",
                },
            )
            if not response.is_success:
                raise ProviderError(
                    response.status_code,
                    response.text,
                    message="Failed to acquire Microsoft Graph access token",
                )
            payload = response.json()
            token = payload.get("access_token")
            if not token:
                raise ProviderError(response.status_code, response.text, message="Token response without access_token")
            self._token = token
            self._expires_at = self._monotonic() + float(payload.get("expires_in", 3600))
            logger.info("Acquired Microsoft Graph token (expires in %ss)", payload.get("expires_in", 3600))
            return token


class GraphClient:
    """Async Microsoft Graph client scoped to what calendar sync needs."""

    def __init__(
        self,
        config: GraphConfig,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        token_provider: Optional[ClientCredentialsTokenProvider] = None,
        timeout: float = 30.0,
        clock: Optional[Clock] = None,
    ) -> None:
        self._config = config
        self._client = http_client
        self._owns_client = http_client is None
        self._tokens = token_provider or ClientCredentialsTokenProvider(config)
        self._timeout = timeout
        self._clock = clock or _utcnow

    @property
    def configured(self) -> bool:
        return self._config.configured

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        if not self.configured:
            raise NotConfiguredError()

        client = self._get_client()
        url = path if path.startswith("http") else f"{GRAPH_BASE_URL}{path}"
        for attempt in range(2):
            token = await self._tokens.get_token(client)
            request_headers = {"Authorization": f"Bearer {token}", **(headers or {})}
            try:
                response = await client.request(method, url, params=params, json=json, headers=request_headers)
            except httpx.HTTPError as exc:
                raise ProviderError(503, str(exc), message=f"Graph request failed: {exc}") from exc
            if response.status_code == 401 and attempt == 0:
                logger.info("Graph answered 401 for %s %s, refreshing token", method, path)
                self._tokens.invalidate()
                continue
            break

        if not response.is_success:
            raise ProviderError(response.status_code, response.text)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def _paged(
        self,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        url: Optional[str] = path
        while url:
            data = await self._request("GET", url, params=params, headers=headers) or {}
            items.extend(data.get("value") or [])
            url = data.get("@odata.nextLink")
            # nextLink already carries the query string
            params = None
        return items

    # -- rooms ---------------------------------------------------------------

    async def list_rooms(self) -> List[GraphRoom]:
        raw = await self._paged("/places/microsoft.graph.room", params={"$top": 100})
        return [
            GraphRoom(
                id=item.get("id", ""),
                email=item.get("emailAddress") or "",
                display_name=item.get("displayName") or "",
                capacity=item.get("capacity") or 0,
                building=item.get("building") or None,
                floor_number=item.get("floorNumber"),
                floor_label=item.get("floorLabel") or None,
            )
            for item in raw
        ]

    async def test_connection(self) -> Dict[str, Any]:
        try:
            rooms = await self.list_rooms()
        except (ProviderError, NotConfiguredError) as exc:
            return {"success": False, "message": str(exc) or "Failed to connect to Microsoft Graph", "room_count": 0}
        return {
            "success": True,
            "message": f"Connected successfully. Found {len(rooms)} room(s) in your organization.",
            "room_count": len(rooms),
        }

    # -- events --------------------------------------------------------------

    async def create_event(
        self,
        room_email: str,
        subject: str,
        start: datetime,
        end: datetime,
        *,
        body: Optional[str] = None,
        online_meeting: bool = False,
        meeting_type: Optional[str] = None,
        attendees: Optional[List[str]] = None,
        organizer_email: Optional[str] = None,
    ) -> CreatedEvent:
        """Book ``room_email`` by creating an event with the room as resource attendee."""
        event_attendees = [
            {"type": "resource", "emailAddress": {"address": room_email, "name": "Conference Room"}},
        ]
        for email in attendees or []:
            if email and "@" in email:
                event_attendees.append({"type": "required", "emailAddress": {"address": email}})

        event: Dict[str, Any] = {
            "subject": subject,
            "start": {"dateTime": format_graph_datetime(start), "timeZone": "UTC"},
            "end": {"dateTime": format_graph_datetime(end), "timeZone": "UTC"},
            "location": {
                "displayName": "Conference Room",
                "locationUri": room_email,
                "locationType": "conferenceRoom",
            },
            "attendees": event_attendees,
            "body": {"contentType": "text", "content": _event_body(subject, body, meeting_type)},
        }
        if online_meeting or is_teams_meeting_type(meeting_type):
            event["isOnlineMeeting"] = True
            event["onlineMeetingProvider"] = TEAMS_PROVIDER

        calendar_owner = organizer_email or room_email
        result = await self._request("POST", f"/users/{_mailbox(calendar_owner)}/events", json=event) or {}
        join_url = (result.get("onlineMeeting") or {}).get("joinUrl")
        return CreatedEvent(event_id=result.get("id", ""), join_url=join_url)

    async def cancel_event(self, room_email: str, event_id: str) -> None:
        await self._request("DELETE", f"/users/{_mailbox(room_email)}/events/{quote(event_id, safe='')}")

    async def get_event(self, room_email: str, event_id: str) -> Optional[Dict[str, Any]]:
        """Current state of an event, or ``None`` when Graph no longer has it."""
        try:
            return await self._request(
                "GET",
                f"/users/{_mailbox(room_email)}/events/{quote(event_id, safe='')}",
                params={"$select": f"{EVENT_FIELDS},body"},
                headers=_UTC_PREFERENCE,
            )
        except ProviderError as exc:
            if exc.is_not_found:
                return None
            raise

    async def get_event_details(self, mailbox: str, event_id: str) -> Optional[EventDetails]:
        try:
            event = await self._request(
                "GET",
                f"/users/{_mailbox(mailbox)}/events/{quote(event_id, safe='')}",
                params={"$select": "attendees"},
            )
        except ProviderError as exc:
            if exc.is_not_found:
                return None
            raise
        if not event or event.get("attendees") is None:
            return None

        attendees = [
            AttendeeStatus(
                email=(item.get("emailAddress") or {}).get("address") or "",
                name=(item.get("emailAddress") or {}).get("name") or "",
                type=item.get("type") or "required",
                response=(item.get("status") or {}).get("response") or "none",
            )
            for item in event["attendees"]
        ]
        room = next((a for a in attendees if a.type == "resource"), None)
        return EventDetails(
            room_response=room.response if room else "none",
            room_email=room.email if room else None,
            attendees=attendees,
        )

    async def get_calendar_view(self, room_email: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        return await self._paged(
            f"/users/{_mailbox(room_email)}/calendarView",
            params={
                "startDateTime": format_graph_datetime(start) + "Z",
                "endDateTime": format_graph_datetime(end) + "Z",
                "$top": 50,
                "$select": EVENT_FIELDS,
            },
            headers=_UTC_PREFERENCE,
        )

    # -- subscriptions -------------------------------------------------------

    def _expiration(self, minutes: int) -> datetime:
        return self._clock() + timedelta(minutes=minutes)

    def _parse_expiration(self, value: Optional[str], fallback: datetime) -> datetime:
        if not value:
            return fallback
        try:
            return parse_graph_datetime(value)
        except ValueError:
            logger.warning("Unparseable subscription expiration %r, using %s", value, fallback)
            return fallback

    async def create_subscription(
        self,
        room_email: str,
        notification_url: str,
        client_state: str,
        expiration_minutes: int = DEFAULT_SUBSCRIPTION_MINUTES,
    ) -> CreatedSubscription:
        expiration = self._expiration(expiration_minutes)
        result = await self._request(
            "POST",
            "/subscriptions",
            json={
                "changeType": SUBSCRIPTION_CHANGE_TYPES,
                "notificationUrl": notification_url,
                "resource": f"/users/{room_email}/events",
                "expirationDateTime": expiration.isoformat().replace("+00:00", "Z"),
                "clientState": client_state,
            },
        ) or {}
        return CreatedSubscription(
            subscription_id=result.get("id", ""),
            expiration=self._parse_expiration(result.get("expirationDateTime"), expiration),
        )

    async def renew_subscription(
        self,
        subscription_id: str,
        expiration_minutes: int = DEFAULT_SUBSCRIPTION_MINUTES,
    ) -> datetime:
        expiration = self._expiration(expiration_minutes)
        result = await self._request(
            "PATCH",
            f"/subscriptions/{quote(subscription_id, safe='')}",
            json={"expirationDateTime": expiration.isoformat().replace("+00:00", "Z")},
        ) or {}
        return self._parse_expiration(result.get("expirationDateTime"), expiration)

    async def delete_subscription(self, subscription_id: str) -> None:
        """Delete a subscription; one Graph already forgot about counts as deleted."""
        try:
            await self._request("DELETE", f"/subscriptions/{quote(subscription_id, safe='')}")
        except ProviderError as exc:
            if not exc.is_not_found:
                raise
