import logging
from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Query, Request, Response, status
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from app.schemas.notification_schema import ChangeNotification

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/graph", tags=["Graph webhook"])


@router.post("/webhook", status_code=status.HTTP_202_ACCEPTED)
async def graph_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    validation_token: Optional[str] = Query(None, alias="validationToken"),
):
    """Microsoft Graph change notification endpoint.

    Answers the subscription validation handshake by echoing the token, and
    otherwise accepts the batch at once; the notifications are reconciled after
    the response is sent, so a bad one never fails the delivery.
    """
    if validation_token is not None:
        return PlainTextResponse(validation_token, status_code=status.HTTP_200_OK)

    try:
        body = await request.json()
    except ValueError:
        logger.warning("Discarding webhook call with a non-JSON body")
        return Response(status_code=status.HTTP_202_ACCEPTED)

    items = body.get("value") if isinstance(body, dict) else None
    notifications = []
    for item in items or []:
        try:
            notifications.append(ChangeNotification.model_validate(item))
        except ValidationError as exc:
            logger.warning("Discarding malformed notification: %s", exc.errors()[:1])

    reconciler = getattr(request.app.state, "reconciler", None)
    if notifications and reconciler is not None:
        background_tasks.add_task(reconciler.process_batch, notifications)
    return Response(status_code=status.HTTP_202_ACCEPTED)
