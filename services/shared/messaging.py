"""Change notifications published to a Redis Stream for UI invalidation."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import redis

logger = logging.getLogger(__name__)

BOOKINGS_CHANGED = "bookings.changed"
ROOMS_CHANGED = "rooms.changed"
SUBSCRIPTIONS_CHANGED = "subscriptions.changed"


class EventPublisher:
    """Publish topic-style change events to a Redis Stream.

    Consumers (the UI gateway, dashboards) read the stream passively; the
    publisher keeps no knowledge of who is listening.
    """

    def __init__(
        self,
        redis_url: str,
        stream_name: str,
        *,
        maxlen: Optional[int] = 1000,
        client: Optional[redis.Redis] = None,
    ) -> None:
        self._stream_name = stream_name
        self._maxlen = maxlen
        self._client = client if client is not None else redis.Redis.from_url(redis_url)

    @property
    def stream_name(self) -> str:
        return self._stream_name

    def publish(
        self,
        event_type: str,
        payload: Dict[str, Any],
        *,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Send an event to the configured stream.

        Parameters
        ----------
        event_type:
            Topic name, e.g. ``bookings.changed``.
        payload:
            Serialisable body (will be JSON dumped).
        metadata:
            Optional envelope metadata (origin of the change, actor, etc.).
        """

        event = {
            "event_type": event_type,
            "payload": json.dumps(payload, default=str),
        }
        if metadata:
            event["metadata"] = json.dumps(metadata, default=str)

        try:
            self._client.xadd(
                self._stream_name,
                event,
                maxlen=self._maxlen,
                approximate=True if self._maxlen else False,
            )
        except redis.RedisError:
            logger.exception("Failed to publish event '%s' to stream '%s'", event_type, self._stream_name)


def notify_changed(
    publisher: Optional[EventPublisher],
    topic: str,
    payload: Dict[str, Any],
    *,
    source: str,
) -> None:
    """Publish ``topic`` if a publisher is configured; fan-out is optional."""
    if publisher is None:
        return
    publisher.publish(topic, payload, metadata={"source": source})
