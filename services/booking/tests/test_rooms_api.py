import uuid
from datetime import datetime, timezone

from app.models.booking import AuditAction
from app.routers import subscription_crud


def test_admin_creates_room_with_normalized_mailbox(client, auth_headers):
    admin = auth_headers(str(uuid.uuid4()), "admin")

    response = client.post(
        "/rooms/",
        json={"name": "Pacific", "capacity": 8, "graph_room_email": "  Pacific@X.com "},
        headers=admin,
    )

    assert response.status_code == 201
    assert response.json()["graph_room_email"] == "pacific@x.com"


def test_regular_user_cannot_create_rooms(client, auth_headers):
    response = client.post("/rooms/", json={"name": "Pacific"}, headers=auth_headers(str(uuid.uuid4())))

    assert response.status_code == 403


def test_list_rooms_hides_inactive_by_default(client, auth_headers, make_room):
    make_room(name="Pacific")
    make_room(name="Atlantic", graph_room_email=None, is_active=False)
    headers = auth_headers(str(uuid.uuid4()))

    active = client.get("/rooms/", headers=headers).json()
    everything = client.get("/rooms/", params={"include_inactive": True}, headers=headers).json()

    assert [r["name"] for r in active] == ["Pacific"]
    assert [r["name"] for r in everything] == ["Atlantic", "Pacific"]


def test_changing_mailbox_stops_sync(synced_client, fake_graph, auth_headers, make_room, make_subscription, db):
    room = make_room()
    make_subscription(room, subscription_id="sub-existing")
    admin = auth_headers(str(uuid.uuid4()), "admin")

    response = synced_client.patch(f"/rooms/{room.id}", json={"graph_room_email": "pacific-new@x.com"}, headers=admin)

    assert response.status_code == 200
    assert response.json()["graph_room_email"] == "pacific-new@x.com"
    assert fake_graph.deleted_subscriptions == ["sub-existing"]
    assert subscription_crud.list_subscriptions(db) == []


def test_clearing_mailbox_stops_sync(synced_client, fake_graph, auth_headers, make_room, make_subscription):
    room = make_room()
    make_subscription(room, subscription_id="sub-existing")
    admin = auth_headers(str(uuid.uuid4()), "admin")

    response = synced_client.patch(f"/rooms/{room.id}", json={"graph_room_email": ""}, headers=admin)

    assert response.json()["graph_room_email"] is None
    assert fake_graph.deleted_subscriptions == ["sub-existing"]


def test_deactivating_room_stops_sync(synced_client, fake_graph, auth_headers, make_room, make_subscription):
    room = make_room()
    make_subscription(room, subscription_id="sub-existing")
    admin = auth_headers(str(uuid.uuid4()), "admin")

    synced_client.patch(f"/rooms/{room.id}", json={"is_active": False}, headers=admin)

    assert fake_graph.deleted_subscriptions == ["sub-existing"]


def test_renaming_room_keeps_sync(synced_client, fake_graph, auth_headers, make_room, make_subscription, db):
    room = make_room()
    make_subscription(room, subscription_id="sub-existing")
    admin = auth_headers(str(uuid.uuid4()), "admin")

    response = synced_client.patch(f"/rooms/{room.id}", json={"name": "Pacific Ocean"}, headers=admin)

    assert response.json()["name"] == "Pacific Ocean"
    assert fake_graph.deleted_subscriptions == []
    assert len(subscription_crud.list_subscriptions(db)) == 1


def test_audit_log_lists_booking_history(client, auth_headers, make_room, make_booking):
    room = make_room()
    booking = make_booking(room, datetime(2024, 1, 1, 10, tzinfo=timezone.utc), datetime(2024, 1, 1, 11, tzinfo=timezone.utc))
    admin = auth_headers(str(uuid.uuid4()), "admin")

    response = client.get("/audit-logs", params={"entity_id": str(booking.id)}, headers=admin)

    assert response.status_code == 200
    assert [entry["action"] for entry in response.json()] == [AuditAction.BOOKING_CREATED]


def test_health_and_root(client):
    assert client.get("/health").json()["service"] == "booking"
    ready = client.get("/ready")
    assert ready.status_code == 200
    assert ready.json()["checks"]["graph"] is None
    assert client.get("/").json()["config"]["graph_configured"] is False
