"""Sentry error tracking.

The observability sink for the sync pipelines:
- capture_error: exceptions with the context they happened in
- capture_warning: non-fatal conditions worth surfacing (error outcomes,
  empty documents, skipped references)

Both always log through structlog; Sentry only receives events once
init_sentry() succeeded.
"""

from typing import Any

import sentry_sdk
from hie_sync.core.config import settings
from hie_sync.core.logging import get_logger
from sentry_sdk.integrations.logging import LoggingIntegration

logger = get_logger(__name__)

# Track initialization state
_sentry_initialized = False

_SENSITIVE_KEYS = ["password", "token", "api_key", "secret", "authorization", "payload", "demographics"]


def init_sentry() -> bool:
    """Initialize Sentry SDK if DSN is configured.

    Returns:
        True if Sentry was initialized, False otherwise
    """
    global _sentry_initialized

    if _sentry_initialized:
        return True

    if not settings.SENTRY_DSN:
        logger.info("sentry_disabled", reason="SENTRY_DSN not configured")
        return False

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        release=f"hie-sync@{settings.APP_VERSION}",
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            LoggingIntegration(
                level=None,  # Capture all breadcrumbs
                event_level=None,  # Events are sent explicitly through capture_*
            ),
        ],
        send_default_pii=False,
        before_send=_scrub_sensitive_data,
    )

    _sentry_initialized = True
    logger.info("sentry_initialized", environment=settings.ENVIRONMENT)
    return True


def _scrub_sensitive_data(event: dict, hint: dict) -> dict | None:
    """Scrub request headers and extra context before sending to Sentry."""
    request = event.get("request")
    if request and "headers" in request:
        headers = request["headers"]
        for header in ("authorization", "x-api-key", "cookie"):
            if header in headers:
                headers[header] = "[REDACTED]"

    if "extra" in event:
        event["extra"] = _redact_dict(event["extra"])

    return event


def _redact_dict(data: dict) -> dict:
    """Recursively redact sensitive dictionary values."""
    result = {}
    for key, value in data.items():
        if any(s in key.lower() for s in _SENSITIVE_KEYS):
            result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = _redact_dict(value)
        elif isinstance(value, list):
            result[key] = [_redact_dict(v) if isinstance(v, dict) else v for v in value]
        else:
            result[key] = value
    return result


def capture_error(error: BaseException, extra: dict[str, Any] | None = None) -> str | None:
    """Log an exception and send it to Sentry with its context.

    Args:
        error: The exception to capture
        extra: Additional context (scrubbed before it leaves the process)

    Returns:
        Sentry event ID if captured, None otherwise
    """
    extra = extra or {}
    logger.error("error_captured", error=str(error), error_type=type(error).__name__, **extra)
    if not _sentry_initialized:
        return None

    with sentry_sdk.new_scope() as scope:
        context = extra.get("context")
        if context:
            scope.set_tag("context", context)
        for key, value in _redact_dict(extra).items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_exception(error)


def capture_warning(message: str, extra: dict[str, Any] | None = None) -> str | None:
    """Log a warning and send it to Sentry as a message event."""
    extra = extra or {}
    logger.warning("warning_captured", message=message, **extra)
    if not _sentry_initialized:
        return None

    with sentry_sdk.new_scope() as scope:
        scope.set_level("warning")
        for key, value in _redact_dict(extra).items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_message(message)
