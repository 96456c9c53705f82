import json
from datetime import datetime, timezone

import httpx
import pytest

from app.core.errors import NotConfiguredError, ProviderError
from app.services.graph_client import (
    NO_MEETING,
    TEAMS_MEETING,
    ClientCredentialsTokenProvider,
    GraphClient,
    format_graph_datetime,
    meeting_type_for_event,
    parse_graph_datetime,
)
from shared import GraphConfig

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
CONFIG = GraphConfig(client_id="client", client_secret="secret", tenant_id="tenant")


class FakeGraphApi:
    """Routes requests to canned responses and records what was sent."""

    def __init__(self):
        self.routes = {}
        self.requests = []
        self.token_requests = 0
        self.clock = [1000.0]

    def on(self, method, path, *responses):
        self.routes[(method, path)] = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "login.microsoftonline.com":
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": f"token-{self.token_requests}", "expires_in": 3600})
        self.requests.append(request)
        key = (request.method, request.url.path.removeprefix("/v1.0"))
        responses = self.routes.get(key)
        if not responses:
            return httpx.Response(404, json={"error": {"code": "ErrorItemNotFound"}})
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    def client(self, config=CONFIG):
        tokens = ClientCredentialsTokenProvider(config, monotonic=lambda: self.clock[0])
        return GraphClient(
            config,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self)),
            token_provider=tokens,
            clock=lambda: NOW,
        )


@pytest.fixture
def api():
    return FakeGraphApi()


class TestDatetimes:

    def test_graph_wall_clock_without_offset_is_utc(self):
        parsed = parse_graph_datetime({"dateTime": "2024-01-01T15:00:00.0000000", "timeZone": "UTC"})
        assert parsed == datetime(2024, 1, 1, 15, 0, tzinfo=timezone.utc)

    def test_bare_string_is_utc(self):
        assert parse_graph_datetime("2024-01-01T15:00:00") == datetime(2024, 1, 1, 15, 0, tzinfo=timezone.utc)

    def test_named_zone_is_applied(self):
        parsed = parse_graph_datetime({"dateTime": "2024-01-01T12:00:00", "timeZone": "America/Sao_Paulo"})
        assert parsed == datetime(2024, 1, 1, 15, 0, tzinfo=timezone.utc)

    def test_explicit_offset_wins(self):
        assert parse_graph_datetime("2024-01-01T12:00:00-03:00") == datetime(2024, 1, 1, 15, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", {}, {"dateTime": None}, 42])
    def test_invalid_values(self, value):
        with pytest.raises(ValueError):
            parse_graph_datetime(value)

    def test_format_is_naive_utc(self):
        assert format_graph_datetime(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)) == "2024-01-01T12:00:00"

    def test_meeting_type(self):
        assert meeting_type_for_event({"isOnlineMeeting": True, "onlineMeetingProvider": "teamsForBusiness"}) == TEAMS_MEETING
        assert meeting_type_for_event({"isOnlineMeeting": True, "onlineMeetingProvider": "skypeForBusiness"}) == NO_MEETING
        assert meeting_type_for_event({}) == NO_MEETING


class TestAuthentication:

    @pytest.mark.asyncio
    async def test_token_is_cached(self, api):
        api.on("GET", "/places/microsoft.graph.room", httpx.Response(200, json={"value": []}))
        graph = api.client()

        await graph.list_rooms()
        await graph.list_rooms()

        assert api.token_requests == 1
        assert api.requests[-1].headers["Authorization"] == "Bearer token-1"

    @pytest.mark.asyncio
    async def test_token_is_refreshed_before_expiry(self, api):
        api.on("GET", "/places/microsoft.graph.room", httpx.Response(200, json={"value": []}))
        graph = api.client()

        await graph.list_rooms()
        api.clock[0] += 3600 - 30
        await graph.list_rooms()

        assert api.token_requests == 2

    @pytest.mark.asyncio
    async def test_unauthorized_answer_retries_once_with_new_token(self, api):
        api.on(
            "GET",
            "/places/microsoft.graph.room",
            httpx.Response(401, json={"error": {"code": "InvalidAuthenticationToken"}}),
            httpx.Response(200, json={"value": [{"id": "r1", "emailAddress": "pacific@x.com", "displayName": "Pacific"}]}),
        )
        graph = api.client()

        rooms = await graph.list_rooms()

        assert [room.email for room in rooms] == ["pacific@x.com"]
        assert api.token_requests == 2
        assert api.requests[-1].headers["Authorization"] == "Bearer token-2"

    @pytest.mark.asyncio
    async def test_token_failure_is_provider_error(self):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_client"})

        graph = GraphClient(CONFIG, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with pytest.raises(ProviderError) as exc_info:
            await graph.list_rooms()
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_not_configured(self):
        graph = GraphClient(GraphConfig())
        assert graph.configured is False
        with pytest.raises(NotConfiguredError):
            await graph.get_event("pacific@x.com", "E1")


class TestRequests:

    @pytest.mark.asyncio
    async def test_provider_error_carries_status(self, api):
        api.on("POST", "/subscriptions", httpx.Response(500, text="server error"))
        graph = api.client()

        with pytest.raises(ProviderError) as exc_info:
            await graph.create_subscription("pacific@x.com", "https://rooms.example.com/graph/webhook", "state")

        assert exc_info.value.status_code == 500
        assert exc_info.value.body == "server error"
        assert exc_info.value.is_not_found is False

    @pytest.mark.asyncio
    async def test_transport_error_is_provider_error(self, api):
        api.on("GET", "/places/microsoft.graph.room", httpx.ConnectError("connection refused"))
        graph = api.client()

        with pytest.raises(ProviderError) as exc_info:
            await graph.list_rooms()
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_no_content_returns_none(self, api):
        api.on("DELETE", "/users/pacific@x.com/events/E1", httpx.Response(204))
        graph = api.client()

        assert await graph.cancel_event("pacific@x.com", "E1") is None

    @pytest.mark.asyncio
    async def test_get_event_missing_returns_none(self, api):
        graph = api.client()

        assert await graph.get_event("pacific@x.com", "gone") is None

    @pytest.mark.asyncio
    async def test_get_event_asks_for_utc(self, api):
        api.on("GET", "/users/pacific@x.com/events/E1", httpx.Response(200, json={"id": "E1", "subject": "Sync Test"}))
        graph = api.client()

        event = await graph.get_event("pacific@x.com", "E1")

        assert event["subject"] == "Sync Test"
        assert api.requests[-1].headers["Prefer"] == 'outlook.timezone="UTC"'

    @pytest.mark.asyncio
    async def test_paged_results_follow_next_link(self, api):
        next_link = "https://graph.microsoft.com/v1.0/users/pacific@x.com/calendarView/page2"
        api.on(
            "GET",
            "/users/pacific@x.com/calendarView",
            httpx.Response(200, json={"value": [{"id": "E1"}], "@odata.nextLink": next_link}),
        )
        api.on("GET", "/users/pacific@x.com/calendarView/page2", httpx.Response(200, json={"value": [{"id": "E2"}]}))
        graph = api.client()

        events = await graph.get_calendar_view("pacific@x.com", NOW, NOW.replace(day=15))

        assert [event["id"] for event in events] == ["E1", "E2"]
        first = api.requests[0]
        assert first.url.params["startDateTime"] == "2024-01-01T12:00:00Z"
        assert first.url.params["endDateTime"] == "2024-01-15T12:00:00Z"

    @pytest.mark.asyncio
    async def test_create_event_payload(self, api):
        api.on(
            "POST",
            "/users/pacific@x.com/events",
            httpx.Response(201, json={"id": "E9", "onlineMeeting": {"joinUrl": "https://teams.example.com/j/9"}}),
        )
        graph = api.client()

        created = await graph.create_event(
            "pacific@x.com",
            "Planning",
            datetime(2024, 1, 1, 15, 0, tzinfo=timezone.utc),
            datetime(2024, 1, 1, 15, 30, tzinfo=timezone.utc),
            meeting_type="Teams Meeting",
            attendees=["a@b.com", "not-an-email"],
        )

        assert created.event_id == "E9"
        assert created.join_url == "https://teams.example.com/j/9"
        body = json.loads(api.requests[-1].content)
        assert body["subject"] == "Planning"
        assert body["start"] == {"dateTime": "2024-01-01T15:00:00", "timeZone": "UTC"}
        assert body["end"] == {"dateTime": "2024-01-01T15:30:00", "timeZone": "UTC"}
        assert [a["type"] for a in body["attendees"]] == ["resource", "required"]
        assert body["attendees"][1]["emailAddress"]["address"] == "a@b.com"
        assert body["isOnlineMeeting"] is True
        assert body["onlineMeetingProvider"] == "teamsForBusiness"
        assert body["body"]["content"] == "Meeting: Planning"

    @pytest.mark.asyncio
    async def test_event_details_find_room_response(self, api):
        api.on(
            "GET",
            "/users/pacific@x.com/events/E1",
            httpx.Response(
                200,
                json={
                    "attendees": [
                        {"type": "resource", "emailAddress": {"address": "pacific@x.com"}, "status": {"response": "accepted"}},
                        {"type": "required", "emailAddress": {"address": "a@b.com", "name": "A"}, "status": {"response": "declined"}},
                    ]
                },
            ),
        )
        graph = api.client()

        details = await graph.get_event_details("pacific@x.com", "E1")

        assert details.room_response == "accepted"
        assert details.room_email == "pacific@x.com"
        assert [(a.email, a.response) for a in details.attendees] == [
            ("pacific@x.com", "accepted"),
            ("a@b.com", "declined"),
        ]

    @pytest.mark.asyncio
    async def test_connection_check_reports_failure(self, api):
        api.on("GET", "/places/microsoft.graph.room", httpx.Response(403, text="forbidden"))
        graph = api.client()

        result = await graph.test_connection()

        assert result["success"] is False
        assert result["room_count"] == 0


class TestSubscriptions:

    @pytest.mark.asyncio
    async def test_create_subscription_payload(self, api):
        api.on(
            "POST",
            "/subscriptions",
            httpx.Response(201, json={"id": "sub-1", "expirationDateTime": "2024-01-04T10:00:00.0000000Z"}),
        )
        graph = api.client()

        created = await graph.create_subscription(
            "pacific@x.com",
            "https://rooms.example.com/graph/webhook",
            "state",
            expiration_minutes=60,
        )

        assert created.subscription_id == "sub-1"
        assert created.expiration == datetime(2024, 1, 4, 10, 0, tzinfo=timezone.utc)
        body = json.loads(api.requests[-1].content)
        assert body == {
            "changeType": "created,updated,deleted",
            "notificationUrl": "https://rooms.example.com/graph/webhook",
            "resource": "/users/pacific@x.com/events",
            "expirationDateTime": "2024-01-01T13:00:00Z",
            "clientState": "state",
        }

    @pytest.mark.asyncio
    async def test_renew_falls_back_to_requested_expiration(self, api):
        api.on("PATCH", "/subscriptions/sub-1", httpx.Response(200, json={}))
        graph = api.client()

        expiration = await graph.renew_subscription("sub-1", expiration_minutes=120)

        assert expiration == datetime(2024, 1, 1, 14, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_delete_tolerates_missing_subscription(self, api):
        graph = api.client()

        await graph.delete_subscription("already-gone")

    @pytest.mark.asyncio
    async def test_delete_propagates_other_errors(self, api):
        api.on("DELETE", "/subscriptions/sub-1", httpx.Response(500, text="boom"))
        graph = api.client()

        with pytest.raises(ProviderError):
            await graph.delete_subscription("sub-1")
