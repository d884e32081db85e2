"""
Laburandik Seller Ops - Logging Configuration
=============================================
structlog setup shared by the API and its services.
"""

import logging
import sys
from typing import Any, Dict

import structlog
from structlog.types import EventDict, Processor

SENSITIVE_KEYS = {
    "password", "secret", "token", "authorization", "apikey", "api_key",
    "service_role_key", "supabase_service_role_key", "client_secret",
    "meli_client_secret", "access_token", "refresh_token", "id_token",
}

REDACTED = "***REDACTED***"


def is_sensitive(key: Any) -> bool:
    """Exact match on the lower-cased key, with dashes read as underscores."""
    return str(key).lower().replace("-", "_") in SENSITIVE_KEYS


def add_app_context(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Tag every entry with the application name."""
    event_dict["app"] = "laburandik"
    event_dict["service"] = "backend"
    return event_dict


def _sanitize(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: REDACTED if is_sensitive(k) else _sanitize(v)
            for k, v in value.items()
        }
    if isinstance(value, str) and len(value) > 1000:
        return value[:100] + "...[truncated]"
    return value


def sanitize_event(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Redact OAuth tokens, database keys and other credentials.

    Nested dictionaries (e.g. a token payload logged as a field) are
    sanitized recursively. The "event" message itself is left untouched.
    """
    sanitized: Dict[str, Any] = {}
    for key, value in event_dict.items():
        if key != "event" and is_sensitive(key):
            sanitized[key] = REDACTED
        else:
            sanitized[key] = _sanitize(value)
    return sanitized


def configure_logging(environment: str = "development", log_level: str = "INFO") -> None:
    """
    Configure structlog for the application.

    Args:
        environment: "development" for console output, "production" for JSON
        log_level: Standard library level name
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_app_context,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        sanitize_event,
    ]

    if environment == "production":
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """
    Get a structlog logger instance.

    Args:
        name: Logger name (typically __name__)
    """
    return structlog.get_logger(name)
