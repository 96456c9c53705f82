"""Lifecycle of Microsoft Graph subscriptions on room mailboxes.

One healthy subscription per sync-enabled room: created on demand, renewed
before it expires and recreated from scratch when renewal fails. Provider
failures never escape a per-room operation; they come back as results so bulk
callers can report partial success.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.errors import NotConfiguredError
from app.models.subscription import SubscriptionStatus
from app.routers import crud, subscription_crud
from app.services.graph_client import DEFAULT_SUBSCRIPTION_MINUTES, GraphClient
from shared import SUBSCRIPTIONS_CHANGED, EventPublisher, GraphConfig, bind_sync_context, notify_changed

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def _generate_client_state() -> str:
    return secrets.token_hex(32)


@dataclass
class SubscriptionResult:
    success: bool
    error: Optional[str] = None
    subscription_id: Optional[str] = None
    renewed: bool = False


@dataclass
class BulkSubscribeResult:
    total: int = 0
    success: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class RemoteDeleteResult:
    """Outcome of a best-effort provider-side delete.

    Local cleanup goes ahead regardless of ``ok``.
    """

    subscription_id: str
    attempted: bool
    ok: bool
    error: Optional[str] = None


@dataclass
class RenewalReport:
    renewed: int = 0
    recreated: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


class SubscriptionManager:
    def __init__(
        self,
        session_factory: SessionFactory,
        graph: GraphClient,
        config: GraphConfig,
        *,
        lookahead: timedelta = timedelta(hours=12),
        expiration_minutes: int = DEFAULT_SUBSCRIPTION_MINUTES,
        publisher: Optional[EventPublisher] = None,
        clock: Optional[Callable[[], datetime]] = None,
        client_state_factory: Callable[[], str] = _generate_client_state,
    ) -> None:
        self._session_factory = session_factory
        self._graph = graph
        self._config = config
        self._lookahead = lookahead
        self._expiration_minutes = expiration_minutes
        self._publisher = publisher
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client_state_factory = client_state_factory

    @property
    def configured(self) -> bool:
        return self._graph.configured

    @property
    def webhook_url(self) -> Optional[str]:
        return self._config.webhook_url

    def _changed(self, action: str, room_email: str) -> None:
        notify_changed(
            self._publisher,
            SUBSCRIPTIONS_CHANGED,
            {"action": action, "room_email": room_email},
            source="subscription-manager",
        )

    async def _delete_remote(self, subscription_id: str) -> RemoteDeleteResult:
        try:
            await self._graph.delete_subscription(subscription_id)
        except Exception as exc:
            logger.warning("Could not delete Graph subscription %s: %s", subscription_id, exc)
            return RemoteDeleteResult(subscription_id, attempted=True, ok=False, error=str(exc))
        return RemoteDeleteResult(subscription_id, attempted=True, ok=True)

    async def _renew(self, subscription_pk: UUID, subscription_id: str) -> datetime:
        expiration = await self._graph.renew_subscription(subscription_id, self._expiration_minutes)
        with self._session_factory() as db:
            subscription = subscription_crud.get_subscription(db, subscription_pk)
            if subscription is not None:
                subscription_crud.update_subscription(
                    db,
                    subscription,
                    expiration_date_time=expiration,
                    status=SubscriptionStatus.ACTIVE,
                    last_error=None,
                )
        return expiration

    async def _discard(self, subscription_pk: UUID, subscription_id: str) -> RemoteDeleteResult:
        remote = await self._delete_remote(subscription_id)
        with self._session_factory() as db:
            subscription = subscription_crud.get_subscription(db, subscription_pk)
            if subscription is not None:
                subscription_crud.delete_subscription(db, subscription)
        return remote

    async def enable_for_room(self, room_id: UUID, room_email: str) -> SubscriptionResult:
        """Renew the room's subscription, or create one. Never raises."""
        with bind_sync_context(room_email=room_email):
            try:
                if not self.configured:
                    raise NotConfiguredError()

                with self._session_factory() as db:
                    existing = subscription_crud.find_by_room_email(db, room_email)
                    existing_ref = (existing.id, existing.subscription_id) if existing else None

                if existing_ref is not None:
                    try:
                        expiration = await self._renew(*existing_ref)
                        logger.info("Renewed subscription for %s (expires %s)", room_email, expiration.isoformat())
                        return SubscriptionResult(success=True, subscription_id=existing_ref[1], renewed=True)
                    except Exception as exc:
                        logger.info("Failed to renew subscription for %s, recreating: %s", room_email, exc)
                        await self._discard(*existing_ref)

                webhook_url = self.webhook_url
                if not webhook_url:
                    raise NotConfiguredError(
                        "WEBHOOK_BASE_URL is required for Graph webhook subscriptions"
                    )

                client_state = self._client_state_factory()
                created = await self._graph.create_subscription(
                    room_email,
                    webhook_url,
                    client_state,
                    self._expiration_minutes,
                )
                with self._session_factory() as db:
                    subscription_crud.upsert(
                        db,
                        room_id=room_id,
                        room_email=room_email,
                        subscription_id=created.subscription_id,
                        expiration_date_time=created.expiration,
                        client_state=client_state,
                    )
                logger.info(
                    "Created subscription for %s (expires %s)",
                    room_email,
                    created.expiration.isoformat(),
                )
                self._changed("created", room_email)
                return SubscriptionResult(success=True, subscription_id=created.subscription_id)
            except Exception as exc:
                logger.error("Failed to create subscription for %s: %s", room_email, exc)
                return SubscriptionResult(success=False, error=str(exc))

    async def subscribe_all(self) -> BulkSubscribeResult:
        """Enable sync for every room with a mailbox, one room at a time."""
        if not self.configured:
            return BulkSubscribeResult(errors=[str(NotConfiguredError())])

        with self._session_factory() as db:
            rooms = [(room.id, room.name, room.graph_room_email) for room in crud.list_sync_rooms(db)]

        result = BulkSubscribeResult(total=len(rooms))
        for room_id, name, email in rooms:
            outcome = await self.enable_for_room(room_id, email)
            if outcome.success:
                result.success += 1
            else:
                result.failed += 1
                result.errors.append(f"{name}: {outcome.error}")
        logger.info("Subscribe-all finished: %d ok, %d failed of %d", result.success, result.failed, result.total)
        return result

    async def disable_for_room(self, room_id: UUID) -> List[RemoteDeleteResult]:
        """Remove every subscription of ``room_id``; local rows go even if Graph refuses."""
        with self._session_factory() as db:
            refs = [(s.id, s.subscription_id, s.room_email) for s in subscription_crud.list_for_room(db, room_id)]

        results = []
        for pk, subscription_id, room_email in refs:
            results.append(await self._discard(pk, subscription_id))
            self._changed("deleted", room_email)
        return results

    async def remove_subscription(self, subscription_pk: UUID) -> Optional[RemoteDeleteResult]:
        """Returns ``None`` when no such subscription is registered."""
        with self._session_factory() as db:
            subscription = subscription_crud.get_subscription(db, subscription_pk)
            if subscription is None:
                return None
            subscription_id, room_email = subscription.subscription_id, subscription.room_email

        result = await self._discard(subscription_pk, subscription_id)
        self._changed("deleted", room_email)
        return result

    async def remove_all(self) -> int:
        with self._session_factory() as db:
            refs = [(s.id, s.subscription_id) for s in subscription_crud.list_subscriptions(db)]

        for pk, subscription_id in refs:
            await self._discard(pk, subscription_id)
        if refs:
            self._changed("deleted_all", "*")
        return len(refs)

    async def renew_expiring(self, now: Optional[datetime] = None) -> RenewalReport:
        """One renewal pass over subscriptions expiring within the lookahead.

        A subscription that cannot be renewed is dropped and recreated for the
        room that still owns the mailbox. Rooms are handled independently.
        """
        now = now or self._clock()
        report = RenewalReport()
        with self._session_factory() as db:
            expiring = [
                (s.id, s.subscription_id, s.room_email)
                for s in subscription_crud.find_expiring_before(db, now + self._lookahead)
            ]
        if not expiring:
            return report
        logger.info("Renewing %d subscription(s) expiring before %s", len(expiring), (now + self._lookahead).isoformat())

        for pk, subscription_id, room_email in expiring:
            with bind_sync_context(room_email=room_email, subscription_id=subscription_id):
                try:
                    expiration = await self._renew(pk, subscription_id)
                    report.renewed += 1
                    logger.info("Renewed subscription for %s (new expiry %s)", room_email, expiration.isoformat())
                    continue
                except Exception as exc:
                    logger.error("Failed to renew subscription for %s: %s", room_email, exc)

                try:
                    await self._discard(pk, subscription_id)
                    with self._session_factory() as db:
                        room = crud.get_room_by_graph_email(db, room_email)
                        room_id = room.id if room else None
                    if room_id is None:
                        logger.warning("No room owns %s anymore; subscription dropped", room_email)
                        report.failed += 1
                        report.errors.append(f"{room_email}: room not found")
                        continue
                    outcome = await self.enable_for_room(room_id, room_email)
                except Exception as exc:
                    logger.exception("Renewal recovery failed for %s", room_email)
                    outcome = SubscriptionResult(success=False, error=str(exc))

                if outcome.success:
                    report.recreated += 1
                else:
                    report.failed += 1
                    report.errors.append(f"{room_email}: {outcome.error}")
                    logger.error("Failed to recreate subscription for %s: %s", room_email, outcome.error)
        return report
