import os
import sys
from pathlib import Path
import pytest
from fastapi.testclient import TestClient
from datetime import datetime, timedelta, timezone
from jose import jwt

SECRET_KEY = os.getenv("SECRET_KEY", "ci-test-secret")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS512")


def make_auth_headers(user_id: str, user_type: str = "user") -> dict:
    """
    Gera um JWT compatível com o TokenPayload do serviço de booking,
    para ser usado nos headers dos testes.
    """
    exp = datetime.now(timezone.utc) + timedelta(hours=1)
    payload = {
        "sub": str(user_id),
        "user_type": user_type,  # "user" ou "admin"
        "exp": int(exp.timestamp()),
    }
    token = jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)
    return {"Authorization": f"Bearer {token}"}


SERVICE_DIR = Path(__file__).resolve().parents[1]
ROOT_DIR = SERVICE_DIR.parent.parent

service_path = str(SERVICE_DIR)
shared_path = str(ROOT_DIR / "services")
for path in (service_path, shared_path):
    if path in sys.path:
        sys.path.remove(path)
    sys.path.insert(0, path)

for module_name in list(sys.modules):
    if module_name == "app" or module_name.startswith("app."):
        sys.modules.pop(module_name)

# Garante que o app e os testes usem o mesmo segredo/algoritmo
os.environ.setdefault("SECRET_KEY", SECRET_KEY)
os.environ.setdefault("JWT_ALGORITHM", ALGORITHM)

os.environ["BOOKING_DATABASE_URL"] = f"sqlite:///{SERVICE_DIR / 'test_booking.db'}"
os.environ["EVENT_STREAM"] = "test-stream"
os.environ["REDIS_URL"] = ""
# Sem credenciais do Microsoft Graph: os testes injetam um cliente falso
for name in ("MICROSOFT_CLIENT_ID", "MICROSOFT_CLIENT_SECRET", "MICROSOFT_TENANT_ID", "WEBHOOK_BASE_URL"):
    os.environ.pop(name, None)

from app.main import app  # noqa: E402
from app.core.database import Base, SessionLocal, engine  # noqa: E402
from app.routers import crud, subscription_crud  # noqa: E402
from app.services.graph_client import AttendeeStatus, CreatedEvent, CreatedSubscription, EventDetails  # noqa: E402
from app.services.reconciler import NotificationReconciler  # noqa: E402
from app.services.renewal import RenewalScheduler  # noqa: E402
from app.services.subscription_manager import SubscriptionManager  # noqa: E402
from shared import GraphConfig  # noqa: E402

ROOM_EMAIL = "pacific@x.com"
WEBHOOK_BASE_URL = "https://rooms.example.com"


class FakeGraph:
    """In-memory stand-in for GraphClient that records every call."""

    def __init__(self):
        self.configured = True
        self.events = {}
        self.calendar_view = []
        self.details = None
        self.expiration = datetime.now(timezone.utc) + timedelta(days=3)

        self.get_event_error = None
        self.create_error = None
        self.renew_error = None
        self.delete_error = None
        self.create_event_error = None

        self.fetched = []
        self.created_subscriptions = []
        self.renewed = []
        self.deleted_subscriptions = []
        self.created_events = []
        self.cancelled_events = []
        self._next_id = 0

    async def get_event(self, room_email, event_id):
        self.fetched.append(event_id)
        if self.get_event_error:
            raise self.get_event_error
        return self.events.get(event_id)

    async def get_event_details(self, mailbox, event_id):
        return self.details

    async def get_calendar_view(self, room_email, start, end):
        return list(self.calendar_view)

    async def create_subscription(self, room_email, notification_url, client_state, expiration_minutes=4200):
        if self.create_error:
            raise self.create_error
        self._next_id += 1
        subscription_id = f"sub-{self._next_id}"
        self.created_subscriptions.append(
            {
                "id": subscription_id,
                "room_email": room_email,
                "notification_url": notification_url,
                "client_state": client_state,
                "expiration_minutes": expiration_minutes,
            }
        )
        return CreatedSubscription(subscription_id=subscription_id, expiration=self.expiration)

    async def renew_subscription(self, subscription_id, expiration_minutes=4200):
        if self.renew_error:
            raise self.renew_error
        self.renewed.append(subscription_id)
        return self.expiration

    async def delete_subscription(self, subscription_id):
        self.deleted_subscriptions.append(subscription_id)
        if self.delete_error:
            raise self.delete_error

    async def create_event(self, room_email, subject, start, end, **kwargs):
        if self.create_event_error:
            raise self.create_event_error
        self.created_events.append({"room_email": room_email, "subject": subject, "start": start, "end": end, **kwargs})
        return CreatedEvent(event_id="outlook-event-1", join_url="https://teams.example.com/join/1")

    async def cancel_event(self, room_email, event_id):
        self.cancelled_events.append((room_email, event_id))

    async def list_rooms(self):
        return []

    async def test_connection(self):
        return {"success": True, "message": "Connected successfully. Found 0 room(s) in your organization.", "room_count": 0}

    async def aclose(self):
        return None


@pytest.fixture(autouse=True)
def prepare_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_factory():
    return SessionLocal


@pytest.fixture
def fake_graph():
    return FakeGraph()


@pytest.fixture
def graph_config():
    return GraphConfig(
        client_id="client",
        client_secret="secret",
        tenant_id="tenant",
        webhook_base_url=WEBHOOK_BASE_URL,
    )


@pytest.fixture
def manager(fake_graph, graph_config):
    return SubscriptionManager(
        SessionLocal,
        fake_graph,
        graph_config,
        lookahead=timedelta(hours=12),
        client_state_factory=lambda: "generated-state",
    )


@pytest.fixture
def reconciler(fake_graph):
    return NotificationReconciler(SessionLocal, fake_graph)


@pytest.fixture
def make_room():
    def _make(name="Pacific", graph_room_email=ROOM_EMAIL, is_active=True, capacity=8):
        with SessionLocal() as session:
            return crud.create_room(
                session,
                {"name": name, "graph_room_email": graph_room_email, "is_active": is_active, "capacity": capacity},
            )

    return _make


@pytest.fixture
def make_subscription():
    def _make(room, subscription_id="sub-existing", client_state="shared-secret", expires_in=timedelta(days=2)):
        with SessionLocal() as session:
            return subscription_crud.upsert(
                session,
                room_id=room.id,
                room_email=room.graph_room_email,
                subscription_id=subscription_id,
                expiration_date_time=datetime.now(timezone.utc) + expires_in,
                client_state=client_state,
            )

    return _make


@pytest.fixture
def make_booking():
    def _make(room, start, end, *, title="Internal meeting", user_id=None, external_event_id=None, status="confirmed"):
        with SessionLocal() as session:
            return crud.create_booking(
                session,
                {
                    "room_id": room.id,
                    "user_id": user_id,
                    "title": title,
                    "start_time": start,
                    "end_time": end,
                    "status": status,
                    "external_event_id": external_event_id,
                },
            )

    return _make


@pytest.fixture
def auth_headers():
    return make_auth_headers


@pytest.fixture
def client():
    app.state.event_publisher = None

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def synced_client(fake_graph, graph_config):
    """Client whose app talks to the fake Graph instead of Microsoft 365."""
    saved = {
        name: getattr(app.state, name)
        for name in ("graph_client", "subscription_manager", "reconciler", "renewal_scheduler")
    }
    manager = SubscriptionManager(SessionLocal, fake_graph, graph_config, client_state_factory=lambda: "generated-state")
    app.state.graph_client = fake_graph
    app.state.subscription_manager = manager
    app.state.reconciler = NotificationReconciler(SessionLocal, fake_graph)
    app.state.renewal_scheduler = RenewalScheduler(manager, interval=3600, initial_delay=3600)
    app.state.event_publisher = None

    with TestClient(app) as test_client:
        yield test_client

    for name, value in saved.items():
        setattr(app.state, name, value)


@pytest.fixture
def attendee_details():
    return EventDetails(
        room_response="accepted",
        room_email=ROOM_EMAIL,
        attendees=[
            AttendeeStatus(email=ROOM_EMAIL, name="Pacific", type="resource", response="accepted"),
            AttendeeStatus(email="ana@example.com", name="Ana", type="required", response="tentativelyAccepted"),
        ],
    )
