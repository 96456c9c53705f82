from datetime import datetime, timedelta, timezone

from app.models.subscription import SubscriptionStatus
from app.routers import subscription_crud


def test_upsert_keeps_one_row_per_mailbox(db, make_room):
    room = make_room()
    now = datetime.now(timezone.utc)

    first = subscription_crud.upsert(
        db,
        room_id=room.id,
        room_email="Pacific@X.com",
        subscription_id="sub-1",
        expiration_date_time=now + timedelta(days=1),
        client_state="state-1",
    )
    subscription_crud.update_subscription(db, first, status=SubscriptionStatus.FAILED, last_error="boom")

    second = subscription_crud.upsert(
        db,
        room_id=room.id,
        room_email="pacific@x.com",
        subscription_id="sub-2",
        expiration_date_time=now + timedelta(days=3),
        client_state="state-2",
    )

    assert second.id == first.id
    assert second.room_email == "pacific@x.com"
    assert second.subscription_id == "sub-2"
    assert second.client_state == "state-2"
    assert second.status == SubscriptionStatus.ACTIVE
    assert second.last_error is None
    assert len(subscription_crud.list_subscriptions(db)) == 1


def test_lookups(db, make_room, make_subscription):
    room = make_room()
    subscription = make_subscription(room, subscription_id="sub-abc")

    assert subscription_crud.find_by_room_email(db, "PACIFIC@x.com").id == subscription.id
    assert subscription_crud.find_by_subscription_id(db, "sub-abc").id == subscription.id
    assert subscription_crud.get_subscription(db, subscription.id).subscription_id == "sub-abc"
    assert [s.id for s in subscription_crud.list_for_room(db, room.id)] == [subscription.id]
    assert subscription_crud.find_by_subscription_id(db, "") is None
    assert subscription_crud.find_by_room_email(db, "") is None


def test_find_expiring_before_only_returns_active_rows(db, make_room, make_subscription):
    pacific = make_room()
    atlantic = make_room(name="Atlantic", graph_room_email="atlantic@x.com")
    indian = make_room(name="Indian", graph_room_email="indian@x.com")
    soon = make_subscription(pacific, subscription_id="sub-soon", expires_in=timedelta(hours=6))
    make_subscription(atlantic, subscription_id="sub-later", expires_in=timedelta(days=2))
    failed = make_subscription(indian, subscription_id="sub-failed", expires_in=timedelta(hours=1))
    subscription_crud.update_subscription(
        db,
        subscription_crud.get_subscription(db, failed.id),
        status=SubscriptionStatus.FAILED,
    )

    expiring = subscription_crud.find_expiring_before(db, datetime.now(timezone.utc) + timedelta(hours=12))

    assert [s.id for s in expiring] == [soon.id]


def test_record_notification_and_error(db, make_room, make_subscription):
    room = make_room()
    subscription = make_subscription(room, subscription_id="sub-1")
    at = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    subscription_crud.record_notification(db, subscription_crud.get_subscription(db, subscription.id), at=at)
    subscription_crud.record_error(db, "sub-1", "updated processing error: boom")

    stored = subscription_crud.get_subscription(db, subscription.id)
    assert stored.last_notification_at == at
    assert stored.last_error == "updated processing error: boom"


def test_record_error_ignores_unknown_subscription(db):
    assert subscription_crud.record_error(db, "missing", "boom") is None


def test_delete_subscription(db, make_room, make_subscription):
    room = make_room()
    subscription = make_subscription(room)

    subscription_crud.delete_subscription(db, subscription_crud.get_subscription(db, subscription.id))

    assert subscription_crud.list_subscriptions(db) == []
