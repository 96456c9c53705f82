from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from app.core.auth_dependencies import TokenPayload, require_admin
from app.core.database import get_db
from app.core.errors import NotConfiguredError, NotFoundError
from app.models.subscription import SubscriptionStatus
from app.schemas.subscription_schema import (
    BulkSubscribeOut,
    ConnectionTestOut,
    DisableRoomOut,
    GraphRoomOut,
    GraphStatusOut,
    RemoteDeleteOut,
    RemoveAllOut,
    RenewalReportOut,
    RoomSyncOut,
    RoomSyncRequest,
    SubscriptionOut,
    SubscriptionResultOut,
)
from . import crud, subscription_crud

router = APIRouter(prefix="/graph", tags=["Graph sync"])

DEFAULT_SYNC_DAYS = 14


def _manager(request: Request):
    return request.app.state.subscription_manager


def _require_configured(request: Request) -> None:
    if not request.app.state.graph_client.configured:
        raise NotConfiguredError()


@router.get("/status", response_model=GraphStatusOut)
def graph_status(
    request: Request,
    db: Session = Depends(get_db),
    _: TokenPayload = Depends(require_admin),
):
    subscriptions = [SubscriptionOut.model_validate(s) for s in subscription_crud.list_subscriptions(db)]
    scheduler = getattr(request.app.state, "renewal_scheduler", None)
    return GraphStatusOut(
        configured=request.app.state.graph_client.configured,
        webhook_url=_manager(request).webhook_url,
        subscriptions=len(subscriptions),
        active_subscriptions=sum(1 for s in subscriptions if s.status == SubscriptionStatus.ACTIVE and not s.is_expired),
        expired_subscriptions=sum(1 for s in subscriptions if s.is_expired),
        renewal_running=bool(scheduler and scheduler.running),
    )


@router.post("/test-connection", response_model=ConnectionTestOut)
async def test_connection(request: Request, _: TokenPayload = Depends(require_admin)):
    if not request.app.state.graph_client.configured:
        return ConnectionTestOut(success=False, message=str(NotConfiguredError()))
    return await request.app.state.graph_client.test_connection()


@router.get("/rooms", response_model=List[GraphRoomOut])
async def list_graph_rooms(request: Request, _: TokenPayload = Depends(require_admin)):
    """Room mailboxes known to Microsoft 365, for mapping onto local rooms."""
    _require_configured(request)
    rooms = await request.app.state.graph_client.list_rooms()
    return [
        GraphRoomOut(
            id=room.id,
            email=room.email,
            display_name=room.display_name,
            capacity=room.capacity,
            building=room.building,
            floor_label=room.floor_label,
        )
        for room in rooms
    ]


@router.get("/subscriptions", response_model=List[SubscriptionOut])
def list_subscriptions(db: Session = Depends(get_db), _: TokenPayload = Depends(require_admin)):
    return subscription_crud.list_subscriptions(db)


@router.post("/subscriptions/subscribe-all", response_model=BulkSubscribeOut)
async def subscribe_all(request: Request, _: TokenPayload = Depends(require_admin)):
    result = await _manager(request).subscribe_all()
    return BulkSubscribeOut(**result.__dict__)


@router.post("/subscriptions/renew", response_model=RenewalReportOut)
async def renew_subscriptions(request: Request, _: TokenPayload = Depends(require_admin)):
    _require_configured(request)
    scheduler = getattr(request.app.state, "renewal_scheduler", None)
    if scheduler is not None:
        report = await scheduler.run_once()
    else:
        report = await _manager(request).renew_expiring()
    return RenewalReportOut(**report.__dict__)


@router.post("/subscriptions/rooms/{room_id}", response_model=SubscriptionResultOut)
async def enable_room(
    room_id: UUID,
    request: Request,
    db: Session = Depends(get_db),
    _: TokenPayload = Depends(require_admin),
):
    _require_configured(request)
    room = crud.get_room(db, room_id)
    if not room:
        raise NotFoundError("Room", room_id)
    if not room.graph_room_email:
        raise HTTPException(400, "Room has no Microsoft 365 mailbox configured")
    result = await _manager(request).enable_for_room(room.id, room.graph_room_email)
    return SubscriptionResultOut(**result.__dict__)


@router.delete("/subscriptions/rooms/{room_id}", response_model=DisableRoomOut)
async def disable_room(
    room_id: UUID,
    request: Request,
    _: TokenPayload = Depends(require_admin),
):
    results = await _manager(request).disable_for_room(room_id)
    return DisableRoomOut(
        room_id=room_id,
        removed=len(results),
        remote=[RemoteDeleteOut(**r.__dict__) for r in results],
    )


@router.delete("/subscriptions/{subscription_pk}", response_model=RemoteDeleteOut)
async def remove_subscription(
    subscription_pk: UUID,
    request: Request,
    _: TokenPayload = Depends(require_admin),
):
    result = await _manager(request).remove_subscription(subscription_pk)
    if result is None:
        raise NotFoundError("Subscription", subscription_pk)
    return RemoteDeleteOut(**result.__dict__)


@router.delete("/subscriptions", response_model=RemoveAllOut)
async def remove_all_subscriptions(request: Request, _: TokenPayload = Depends(require_admin)):
    return RemoveAllOut(removed=await _manager(request).remove_all())


@router.post("/rooms/{room_id}/sync", response_model=RoomSyncOut)
async def sync_room(
    room_id: UUID,
    request: Request,
    window: Optional[RoomSyncRequest] = None,
    _: TokenPayload = Depends(require_admin),
):
    """Re-read the room calendar and apply every event in the window."""
    _require_configured(request)
    start = (window.start if window else None) or datetime.now(timezone.utc)
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    end = (window.end if window else None) or start + timedelta(days=DEFAULT_SYNC_DAYS)
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    if end <= start:
        raise HTTPException(400, "end must be after start")

    outcomes = await request.app.state.reconciler.sync_room_window(room_id, start, end)
    return RoomSyncOut(room_id=room_id, events=sum(outcomes.values()), outcomes=outcomes)
