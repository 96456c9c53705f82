from app.main import app
from app.routers import crud


class RecordingReconciler:
    def __init__(self):
        self.batches = []

    async def process_batch(self, notifications):
        self.batches.append(list(notifications))
        return []


def _item(**overrides):
    item = {
        "subscriptionId": "sub-existing",
        "clientState": "shared-secret",
        "changeType": "created",
        "resource": "Users/pacific@x.com/Events/E1",
        "resourceData": {"id": "E1", "@odata.type": "#Microsoft.Graph.Event"},
    }
    item.update(overrides)
    return item


def test_validation_handshake_echoes_token(client):
    response = client.post("/graph/webhook", params={"validationToken": "Validation: Token 123"})

    assert response.status_code == 200
    assert response.text == "Validation: Token 123"
    assert response.headers["content-type"].startswith("text/plain")


def test_batch_is_accepted_and_handed_to_reconciler(client, monkeypatch):
    recorder = RecordingReconciler()
    monkeypatch.setattr(app.state, "reconciler", recorder)

    response = client.post("/graph/webhook", json={"value": [_item(), _item(resourceData={"id": "E2"})]})

    assert response.status_code == 202
    [batch] = recorder.batches
    assert [n.event_id for n in batch] == ["E1", "E2"]
    assert batch[0].client_state == "shared-secret"


def test_malformed_items_are_discarded_without_failing_the_batch(client, monkeypatch):
    recorder = RecordingReconciler()
    monkeypatch.setattr(app.state, "reconciler", recorder)
    broken = _item()
    del broken["changeType"]

    response = client.post("/graph/webhook", json={"value": [broken, "not an object", _item()]})

    assert response.status_code == 202
    [batch] = recorder.batches
    assert len(batch) == 1


def test_non_json_body_is_accepted(client, monkeypatch):
    recorder = RecordingReconciler()
    monkeypatch.setattr(app.state, "reconciler", recorder)

    response = client.post("/graph/webhook", content=b"not json", headers={"Content-Type": "application/json"})

    assert response.status_code == 202
    assert recorder.batches == []


def test_notification_creates_booking_end_to_end(synced_client, fake_graph, make_room, make_subscription, db):
    room = make_room()
    make_subscription(room)
    fake_graph.events["E1"] = {
        "id": "E1",
        "subject": "Sync Test",
        "start": {"dateTime": "2024-01-01T15:00:00.0000000", "timeZone": "UTC"},
        "end": {"dateTime": "2024-01-01T15:30:00.0000000", "timeZone": "UTC"},
        "isOnlineMeeting": True,
        "onlineMeetingProvider": "teamsForBusiness",
        "attendees": [
            {"type": "resource", "emailAddress": {"address": "pacific@x.com"}},
            {"type": "required", "emailAddress": {"address": "a@b.com"}},
        ],
    }

    response = synced_client.post("/graph/webhook", json={"value": [_item()]})

    assert response.status_code == 202
    [booking] = crud.list_bookings(db, room_id=room.id)
    assert booking.external_event_id == "E1"
    assert booking.title == "Sync Test"
    assert booking.meeting_type == "Teams Meeting"
    assert booking.attendees == ["a@b.com"]


def test_forged_notification_changes_nothing(synced_client, fake_graph, make_room, make_subscription, db):
    room = make_room()
    make_subscription(room)

    response = synced_client.post("/graph/webhook", json={"value": [_item(clientState="forged")]})

    assert response.status_code == 202
    assert fake_graph.fetched == []
    assert crud.list_bookings(db, room_id=room.id) == []
