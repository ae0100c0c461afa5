from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Dict

import redis

from clinicdesk_shared import set_request_id, setup_json_logging

from .notifications import deliver

log = logging.getLogger("clinicdesk.notify_worker")


def handle_message(msg: Dict[str, Any]) -> bool:
    """Deliver one Pub/Sub message if it carries a notification job."""
    if not msg or msg.get("type") != "message":
        return False
    raw = msg.get("data")
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", "replace")
        data = json.loads(raw)
    except Exception:
        log.warning("received non-JSON event on %s: %r", msg.get("channel"), raw)
        return False
    if not isinstance(data, dict) or data.get("type") != "notify":
        return False
    job = data.get("payload")
    if not isinstance(job, dict):
        log.warning("notify event without a job payload: %r", data)
        return False
    set_request_id(str(data.get("request_id") or ""))
    result = deliver(job)
    if not result.get("success"):
        log.info("notification not sent: %s", result.get("error"))
    return True


def main() -> int:
    """
    Blocking worker that subscribes to clinic events on Redis Pub/Sub and
    delivers the email/SMS jobs they carry.
    """
    setup_json_logging(service="clinic-notify-worker")
    url = os.getenv("EVENTS_REDIS_URL", "redis://localhost:6379/0")
    channels = [c.strip() for c in os.getenv("EVENTS_CHANNELS", "events:clinic").split(",") if c.strip()]
    if not channels:
        log.error("no channels configured for notification worker")
        return 1

    log.info("connecting to redis at %s", url)
    try:
        client = redis.from_url(url)
    except Exception as e:  # pragma: no cover
        log.error("failed to connect to redis: %s", e)
        return 1

    pubsub = client.pubsub(ignore_subscribe_messages=True)
    pubsub.subscribe(*channels)
    log.info("subscribed to channels: %s", ", ".join(channels))

    try:
        for msg in pubsub.listen():
            handle_message(msg)
    except KeyboardInterrupt:
        log.info("notification worker interrupted, shutting down")
    except Exception as e:  # pragma: no cover
        log.error("notification worker crashed: %s", e)
        time.sleep(1)
        return 1
    finally:
        pubsub.close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
