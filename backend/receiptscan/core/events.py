"""Job progress events over Redis pub/sub.

Every persisted progress transition is also published, best-effort, on
two channels so a UI can update without polling:

* ``jobs:user:{owner_id}`` for every job of an owner,
* ``jobs:job:{job_id}`` for one job.

The database row stays the source of truth; a missing Redis server or a
publish error only costs the live update. Publishing is disabled with
``EVENTS_ENABLED=false`` (the test suite does this).
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import redis

from receiptscan.core.config import settings

logger = logging.getLogger(__name__)

# Lightweight Redis publisher, created on first use
_redis_pub: Any = None


def _get_redis_pub():
    global _redis_pub
    if _redis_pub is None:
        try:
            _redis_pub = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
        except (redis.RedisError, ValueError) as exc:
            logger.warning("progress events disabled: %s", exc)
            _redis_pub = False
    return _redis_pub


def user_channel(owner_id: str) -> str:
    return f"jobs:user:{owner_id}"


def job_channel(job_id: str) -> str:
    return f"jobs:job:{job_id}"


def publish_job_event(owner_id: str, job_id: str, event_type: str, data: Optional[Dict[str, Any]] = None) -> bool:
    """Publish ``event_type`` for a job; returns whether it was sent."""
    if not settings.EVENTS_ENABLED:
        return False
    pub = _get_redis_pub()
    if not pub:
        return False
    payload = {"type": event_type, "owner_id": owner_id, "job_id": job_id, **(data or {})}
    message = json.dumps(payload, default=str, ensure_ascii=False)
    try:
        pub.publish(user_channel(owner_id), message)
        pub.publish(job_channel(job_id), message)
    except redis.RedisError as exc:
        logger.debug("publish failed job=%s type=%s: %s", job_id, event_type, exc)
        return False
    return True
