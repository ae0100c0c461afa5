from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Dict, Iterable, List

import redis

from clinicdesk_shared import get_request_id

from . import notifications

_log = logging.getLogger("clinicdesk.events")

DOMAIN = "clinic"
NOTIFY_EVENT = "notify"


class EventPublisher:
    """
    Publishes clinic notification jobs.

    With ``EVENTS_ENABLED=true`` the jobs go to Redis Pub/Sub on
    ``events:clinic`` for the notification worker to pick up. Otherwise, or
    when Redis refuses the publish, they are delivered in-process.
    """

    def __init__(self) -> None:
        self._url = os.getenv("EVENTS_REDIS_URL", "redis://localhost:6379/0")
        self._enabled = os.getenv("EVENTS_ENABLED", "false").strip().lower() == "true"
        self._client = None
        if self._enabled:
            try:
                self._client = redis.from_url(self._url)
            except Exception as e:  # pragma: no cover
                _log.warning("events: failed to connect to redis '%s': %s", self._url, e)
                self._enabled = False

    @property
    def enabled(self) -> bool:
        return self._enabled and self._client is not None

    def publish(self, event_type: str, payload: Dict[str, Any]) -> bool:
        """True when the event went out on the channel."""
        if not self.enabled:
            return False
        data = {
            "domain": DOMAIN,
            "type": event_type,
            "ts_ms": int(time.time() * 1000),
            "request_id": get_request_id(),
            "payload": payload,
        }
        try:
            self._client.publish(f"events:{DOMAIN}", json.dumps(data, default=str))
            return True
        except Exception as e:
            _log.warning("events: redis publish failed: %s", e)
            return False


_publisher = EventPublisher()


def publish_notifications(jobs: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Hand email/SMS jobs off after a transition has been committed.

    Returns one result per job that was delivered in-process; jobs that went
    out over Redis report ``{"queued": True}``. Never raises.
    """
    results: List[Dict[str, Any]] = []
    for job in jobs:
        try:
            if _publisher.publish(NOTIFY_EVENT, job):
                results.append({"queued": True})
                continue
            results.append(notifications.deliver(job))
        except Exception as e:
            _log.error("events: failed to dispatch %s notification: %s", job.get("template"), e)
            results.append({"success": False, "error": str(e)})
    return results
