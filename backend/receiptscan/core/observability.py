"""Observability helpers (Sentry init & common scrubbing).

Centralises Sentry initialisation for the worker and any process that
enqueues jobs so configuration does not drift. Initialisation is a
no-op when no DSN is configured, and every helper below is best-effort:
telemetry must never break a job.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.dramatiq import DramatiqIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from receiptscan.core.config import settings

logger = logging.getLogger(__name__)

# Keys whose values never leave the process
_SCRUB_KEYS = {"ocr_text_raw", "raw_text", "openai_api_key", "secret_key", "authorization"}


def _before_send(event: Dict[str, Any], hint: Dict[str, Any] | None = None):
	"""Scrub receipt contents and secrets before sending to Sentry.

	- Drop OCR text and credentials from extra data
	- Drop local variables captured in stack frames
	"""
	try:
		extra = event.get("extra") or {}
		for k in list(extra.keys()):
			if k.lower() in _SCRUB_KEYS:
				extra.pop(k, None)
		for exc in (event.get("exception") or {}).get("values", []):
			for frame in (exc.get("stacktrace") or {}).get("frames", []):
				frame.pop("vars", None)
	except (AttributeError, TypeError):  # best effort on unexpected shapes
		pass
	return event


def _enabled() -> bool:
	return bool(settings.SENTRY_DSN)


def init_sentry(service: str) -> bool:
	"""Initialise Sentry once for a given process.

	Returns True if Sentry was initialised; False otherwise.
	"""
	if not _enabled():
		return False
	if getattr(init_sentry, "_done", False):  # prevent duplicate init in same process
		return True
	sentry_sdk.init(
		dsn=settings.SENTRY_DSN,
		integrations=[
			DramatiqIntegration(),
			SqlalchemyIntegration(),
			LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
		],
		traces_sample_rate=float(settings.SENTRY_TRACES_SAMPLE_RATE or 0),
		profiles_sample_rate=float(settings.SENTRY_PROFILES_SAMPLE_RATE or 0),
		environment=settings.ENVIRONMENT,
		release=settings.SENTRY_RELEASE,
		send_default_pii=False,
		before_send=_before_send,
	)
	sentry_sdk.set_tag("service", service)
	init_sentry._done = True  # type: ignore[attr-defined]
	logger.info("Sentry initialised for service=%s", service)
	return True


def sentry_set_tags(tags: Dict[str, Any]) -> None:
	"""Best-effort: set tags on the current scope (strings only)."""
	if not _enabled():
		return
	try:
		for k, v in (tags or {}).items():
			sentry_sdk.set_tag(str(k), str(v)[:128] if v is not None else "")
	except Exception:
		return


def sentry_breadcrumb(category: str, message: str, level: str = "info", data: Optional[Dict[str, Any]] = None) -> None:
	"""Best-effort: add a breadcrumb for important lifecycle steps."""
	if not _enabled():
		return
	try:
		sentry_sdk.add_breadcrumb(category=category, message=message, level=level, data=data or {})
	except Exception:
		return


def sentry_metric_inc(name: str, value: int = 1, tags: Optional[Dict[str, Any]] = None) -> None:
	"""Best-effort: increment a counter using Sentry Metrics if available.

	Falls back to no-op when metrics are unavailable in the installed SDK.
	"""
	if not _enabled():
		return
	try:
		from sentry_sdk import metrics  # type: ignore

		# Coerce tag values to short strings to avoid large payloads
		safe_tags = {str(k): str(v)[:64] for k, v in (tags or {}).items()}
		metrics.increment(name, value=value, tags=safe_tags)  # type: ignore
	except Exception:
		return


def capture_exception(exc: BaseException) -> None:
	"""Best-effort: report a handled exception (e.g. a job-fatal error)."""
	if not _enabled():
		return
	try:
		sentry_sdk.capture_exception(exc)
	except Exception:
		return


__all__ = ["init_sentry", "sentry_set_tags", "sentry_breadcrumb", "sentry_metric_inc", "capture_exception"]
