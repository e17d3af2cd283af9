"""Dramatiq task definitions for background processing.

A video job is long running: decoding the video, one model call per
sampled frame and one or two more per detected receipt. The request
that creates the job only enqueues :func:`process_video_job` and
returns; a Dramatiq worker executes the pipeline via a Redis broker.

To run these tasks start a worker pointed at the worker module:

```bash
dramatiq receiptscan.worker --processes 1 --threads 4
```

The broker URL defaults to ``REDIS_URL``; set ``DRAMATIQ_BROKER_URL``
to use a different Redis. Under ``ENVIRONMENT=test`` an in-memory
``StubBroker`` is used so importing this module needs no Redis.
"""

from __future__ import annotations

import logging

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import AgeLimit, ShutdownNotifications, TimeLimit
from dramatiq.middleware.time_limit import TimeLimitExceeded
import sentry_sdk

from receiptscan.core.config import settings
from receiptscan.core.observability import sentry_breadcrumb, sentry_metric_inc, sentry_set_tags

logger = logging.getLogger(__name__)

JOB_QUEUE = "video_jobs"


def _has_mw(broker, mw_cls):
    return any(isinstance(m, mw_cls) for m in broker.middleware)


def build_broker():
    """Create the broker for this process and make it the global one."""
    if (settings.ENVIRONMENT or "").lower() == "test":
        broker = StubBroker()
        broker.emit_after("process_boot")
    else:
        broker_url = settings.DRAMATIQ_BROKER_URL or settings.REDIS_URL
        logger.info("Configuring Dramatiq with Redis URL: %s", broker_url)
        broker = RedisBroker(url=broker_url)
        if not _has_mw(broker, AgeLimit):
            broker.add_middleware(AgeLimit())
        if not _has_mw(broker, TimeLimit):
            broker.add_middleware(TimeLimit())
        if not _has_mw(broker, ShutdownNotifications):
            broker.add_middleware(ShutdownNotifications())
    dramatiq.set_broker(broker)
    return broker


# Export the broker for Dramatiq CLI
broker = build_broker()


@dramatiq.actor(queue_name=JOB_QUEUE, max_retries=0, time_limit=settings.JOB_TIME_LIMIT_MS)
def process_video_job(job_id: str, owner_id: str, storage_key: str):
    """Run the video pipeline for one job.

    Never retried: a rerun would duplicate receipts already written. The
    pipeline records every failure on the job row itself; only a worker
    time limit is handled here.
    """
    from receiptscan.services.pipeline import JobPipeline

    sentry_set_tags({"job_id": job_id})
    sentry_breadcrumb("task", "process_video_job received", data={"job_id": job_id})
    pipeline = JobPipeline()
    try:
        with sentry_sdk.start_span(op="task.process_video_job", name="Process video job"):
            outcome = pipeline.run(job_id, owner_id, storage_key)
    except TimeLimitExceeded:
        logger.error("job %s exceeded the %sms time limit", job_id, settings.JOB_TIME_LIMIT_MS)
        pipeline.mark_failed(job_id, owner_id, "JOB_TIMEOUT", "Processing exceeded the time limit")
        sentry_metric_inc("jobs.timeout")
        return
    logger.info(
        "job %s finished status=%s receipts=%d failed=%d",
        job_id,
        outcome.status.value,
        outcome.persisted_receipt_count,
        outcome.failed_receipt_count,
    )
