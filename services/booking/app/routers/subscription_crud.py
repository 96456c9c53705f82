"""Persistence of room mailbox subscriptions.

Pure data access: nothing here talks to Microsoft Graph. Every write commits.
"""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID
from sqlalchemy import func
from sqlalchemy.orm import Session
from app.models.subscription import Subscription, SubscriptionStatus


def _normalize(email: str) -> str:
    return email.strip().lower()


def find_by_room_email(db: Session, room_email: str) -> Optional[Subscription]:
    if not room_email:
        return None
    return (
        db.query(Subscription)
        .filter(func.lower(Subscription.room_email) == _normalize(room_email))
        .first()
    )


def find_by_subscription_id(db: Session, subscription_id: str) -> Optional[Subscription]:
    if not subscription_id:
        return None
    return db.query(Subscription).filter(Subscription.subscription_id == subscription_id).first()


def get_subscription(db: Session, subscription_pk: UUID) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.id == subscription_pk).first()


def list_subscriptions(db: Session) -> List[Subscription]:
    return db.query(Subscription).order_by(Subscription.room_email.asc()).all()


def list_for_room(db: Session, room_id: UUID) -> List[Subscription]:
    return db.query(Subscription).filter(Subscription.room_id == room_id).all()


def find_expiring_before(db: Session, threshold: datetime) -> List[Subscription]:
    """Active subscriptions whose expiration falls before ``threshold``."""
    if threshold.tzinfo is None:
        threshold = threshold.replace(tzinfo=timezone.utc)
    return (
        db.query(Subscription)
        .filter(Subscription.status == SubscriptionStatus.ACTIVE)
        .filter(Subscription.expiration_date_time < threshold)
        .order_by(Subscription.expiration_date_time.asc())
        .all()
    )


def upsert(
    db: Session,
    *,
    room_id: UUID,
    room_email: str,
    subscription_id: str,
    expiration_date_time: datetime,
    client_state: str,
) -> Subscription:
    """Create or replace the single subscription row of ``room_email``."""
    subscription = find_by_room_email(db, room_email)
    if subscription is None:
        subscription = Subscription(room_email=_normalize(room_email))
        db.add(subscription)
    subscription.room_id = room_id
    subscription.subscription_id = subscription_id
    subscription.expiration_date_time = expiration_date_time
    subscription.client_state = client_state
    subscription.status = SubscriptionStatus.ACTIVE
    subscription.last_error = None
    db.commit()
    db.refresh(subscription)
    return subscription


def update_subscription(db: Session, subscription: Subscription, **values) -> Subscription:
    for key, value in values.items():
        setattr(subscription, key, value)
    db.commit()
    db.refresh(subscription)
    return subscription


def delete_subscription(db: Session, subscription: Subscription) -> None:
    db.delete(subscription)
    db.commit()


def record_notification(db: Session, subscription: Subscription, at: Optional[datetime] = None) -> Subscription:
    return update_subscription(
        db,
        subscription,
        last_notification_at=at or datetime.now(timezone.utc),
    )


def record_error(db: Session, subscription_id: str, message: str) -> Optional[Subscription]:
    """Store ``message`` on the subscription for operators; unknown ids are ignored."""
    subscription = find_by_subscription_id(db, subscription_id)
    if subscription is None:
        return None
    return update_subscription(db, subscription, last_error=message[:2000])
