import logging
import re
import sys
from typing import Any, cast

import structlog

from finopsbridge.shared.core.config import get_settings

_EMAIL_REGEX = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+")
# Webhook URLs for chat channels embed their secret in the path.
_WEBHOOK_SECRET_REGEX = re.compile(
    r"(https://(?:hooks\.slack\.com/services|discord(?:app)?\.com/api/webhooks)/)[^\s\"']+"
)

_PII_FIELDS = {
    "password",
    "token",
    "secret",
    "authorization",
    "auth",
    "api_key",
    "apikey",
    "access_token",
    "refresh_token",
    "client_secret",
    "private_key",
    "credentials",
    "service_account_json",
}
_PII_SUFFIXES = ("_token", "_secret", "_password", "_key")
_PII_CONTAINS = ("authorization", "secret", "token", "apikey", "api_key")


def _is_sensitive_key(key: Any) -> bool:
    key_norm = str(key).lower().strip().replace("-", "_")
    if key_norm in _PII_FIELDS:
        return True
    if key_norm.endswith(_PII_SUFFIXES):
        return True
    tokens = [t for t in re.split(r"[^a-z0-9]+", key_norm) if t]
    if any(t in _PII_FIELDS for t in tokens):
        return True
    return any(fragment in key_norm for fragment in _PII_CONTAINS)


def _redact_text(text: str) -> str:
    text = _EMAIL_REGEX.sub("[EMAIL_REDACTED]", text)
    return _WEBHOOK_SECRET_REGEX.sub(r"\1[REDACTED]", text)


def _redact_recursive(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            k: ("[REDACTED]" if _is_sensitive_key(k) else _redact_recursive(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [_redact_recursive(item) for item in data]
    if isinstance(data, str):
        return _redact_text(data)
    return data


def pii_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Recursively redact credentials, webhook secrets and email addresses from logs.
    Cloud credentials and channel URLs must never reach the log sink.
    """
    redacted = _redact_recursive(event_dict)
    if isinstance(redacted, dict):
        return cast(dict[str, Any], redacted)
    return {}


def setup_logging() -> None:
    settings = get_settings()

    base_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        pii_redactor,
    ]

    if settings.DEBUG:
        renderer: Any = structlog.dev.ConsoleRenderer()
        processors = base_processors + [renderer]
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        processors = base_processors + [structlog.processors.dict_tracebacks, renderer]
        min_level = logging.INFO

    structlog.configure(
        processors=cast(Any, processors),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Route library logs (SDKs, apscheduler, httpx) through stderr as well.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=min_level,
    )


def audit_log(
    event: str,
    organization_id: str,
    details: dict[str, Any] | None = None,
) -> None:
    """Standardized helper for enforcement audit events (violations, remediations)."""
    logger = structlog.get_logger("audit")
    logger.info(
        event,
        organization_id=str(organization_id),
        metadata=details or {},
    )
