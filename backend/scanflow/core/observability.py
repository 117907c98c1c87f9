"""Observability helpers (Sentry init & common scrubbing).

Centralises Sentry initialisation so configuration does not drift.
Every helper is a no-op when no DSN is configured.  The
capture pipeline records breadcrumbs for upload, extraction and
rollback so a failed ingest can be reconstructed from one event.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from scanflow.core.config import settings

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration


def _enabled() -> bool:
	return bool(settings.SENTRY_DSN)


def _before_send(event: Dict[str, Any], hint: Dict[str, Any] | None = None):  # type: ignore[override]
	"""Scrub obvious PII / secrets before sending to Sentry.

	- Drop Authorization & Cookie headers
	- Remove request data/body (receipt images and extracted fields)
	"""
	try:
		req = event.get("request") or {}
		headers = req.get("headers") or {}
		for k in list(headers.keys()):
			lk = k.lower()
			if lk in ("authorization", "cookie", "set-cookie", "x-api-key"):
				headers.pop(k, None)
		if "data" in req:
			req.pop("data", None)
		event["request"] = req
	except Exception:  # best effort
		pass
	return event


def init_sentry(service: str) -> bool:
	"""Initialise Sentry once for a given process.

	Returns True if Sentry was initialised; False otherwise.
	"""
	if not _enabled():  # pragma: no cover - simple guard
		return False
	if getattr(init_sentry, "_done", False):  # prevent duplicate init in same process
		return True
	sentry_sdk.init(
		dsn=settings.SENTRY_DSN,
		integrations=[FastApiIntegration(), SqlalchemyIntegration()],
		traces_sample_rate=float(settings.SENTRY_TRACES_SAMPLE_RATE or 0),
		profiles_sample_rate=float(settings.SENTRY_PROFILES_SAMPLE_RATE or 0),
		environment=settings.ENVIRONMENT,
		release=settings.SENTRY_RELEASE,
		before_send=_before_send,
	)
	sentry_sdk.set_tag("service", service)
	init_sentry._done = True  # type: ignore[attr-defined]
	return True


def sentry_set_tags(tags: Dict[str, Any]) -> None:
	"""Best-effort: set tags on current Sentry scope (strings only)."""
	try:
		if not _enabled():
			return
		scope = sentry_sdk.get_current_scope()  # type: ignore
		for k, v in (tags or {}).items():
			scope.set_tag(str(k), str(v)[:128] if v is not None else "")
	except Exception:
		return


def sentry_breadcrumb(category: str, message: str, level: str = "info", data: Optional[Dict[str, Any]] = None) -> None:
	"""Best-effort: add a breadcrumb for important lifecycle steps."""
	try:
		if not _enabled():
			return
		sentry_sdk.add_breadcrumb(  # type: ignore
			category=category,
			message=message,
			level=level,
			data=data or {},
		)
	except Exception:
		return


def sentry_capture(exc: BaseException) -> None:
	"""Best-effort: report an exception that is handled but worth surfacing."""
	try:
		if not _enabled():
			return
		sentry_sdk.capture_exception(exc)  # type: ignore
	except Exception:
		return


__all__ = ["init_sentry", "sentry_set_tags", "sentry_breadcrumb", "sentry_capture"]
