"""Dramatiq worker entry point.

This module configures logging and Sentry and imports all tasks so they
are registered when the worker starts.

Run with:
    dramatiq receiptscan.worker
"""

import logging

from receiptscan.core.config import settings
from receiptscan.core.observability import init_sentry

logging.basicConfig(
    level=getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("receiptscan.worker")

if init_sentry("worker"):
    logger.info("Sentry SDK initialized for worker")

# Import tasks to register them; ``broker`` is what the Dramatiq CLI loads
from receiptscan.core.tasks import broker, process_video_job  # noqa: E402,F401

logger.info("Tasks registered: %s", process_video_job.actor_name)
