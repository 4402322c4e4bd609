"""
Structured logging configuration for connect-core.

This module provides centralized logging configuration using structlog,
with support for request context tracking, secret masking, and
environment-specific formatting.
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog
from structlog.types import EventDict, Processor

# Context variable for request-scoped data
request_context: ContextVar[Optional[Dict[str, Any]]] = ContextVar(
    "request_context", default=None
)

# Keys whose values never reach the log output in clear text
SENSITIVE_KEYS = [
    "password",
    "secret",
    "authorization",
    "access_token",
    "refresh_token",
    "code_verifier",
    "fernet_key",
]


class RequestContextProcessor:
    """
    Add request context to all log entries.

    Extracts request-scoped context (request_id, method, path) from context
    variables and adds it to every log entry emitted while handling that request.
    """

    def __call__(
        self, logger: Any, method_name: str, event_dict: EventDict
    ) -> EventDict:
        ctx = request_context.get()
        if ctx is not None:
            event_dict.update(ctx)
        return event_dict


class EnvironmentProcessor:
    """Add app environment and version to log entries."""

    def __init__(self, app_env: str, app_version: str):
        self.app_env = app_env
        self.app_version = app_version

    def __call__(
        self, logger: Any, method_name: str, event_dict: EventDict
    ) -> EventDict:
        event_dict["env"] = self.app_env
        event_dict["version"] = self.app_version
        return event_dict


def mask_value(value: Any) -> str:
    """Mask a secret, keeping the first and last 4 characters of long strings."""
    if isinstance(value, str) and len(value) > 8:
        return f"{value[:4]}...{value[-4:]}"
    return "***REDACTED***"


def truncate_state(state: Optional[str]) -> str:
    """
    Shorten a state token for log output.

    State tokens are single-use and short-lived, but the full value still
    acts as a bearer credential until consumed.
    """
    if not state:
        return "<none>"
    return f"{state[:8]}..."


def filter_sensitive_data(
    logger: Any, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Filter sensitive data from log entries.

    Masks OAuth tokens, client secrets, PKCE verifiers and encryption keys
    to prevent accidental exposure in logs.
    """
    for key, value in list(event_dict.items()):
        # Flags such as has_refresh_token stay readable
        if not isinstance(value, str):
            continue
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
            event_dict[key] = mask_value(value)

    return event_dict


def configure_logging(
    log_level: str = "INFO",
    app_env: str = "development",
    app_version: str = "0.1.0",
    json_format: Optional[bool] = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        app_env: Application environment (development, staging, production, test)
        app_version: Application version for tracking
        json_format: Force JSON output (None = auto-detect based on environment)

    Development and test environments get a human-readable console renderer;
    staging and production emit JSON for log aggregation.
    """
    if json_format is None:
        json_format = app_env in ["staging", "production"]

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        RequestContextProcessor(),
        EnvironmentProcessor(app_env, app_version),
        filter_sensitive_data,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=app_env != "test"))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (usually __name__ from the calling module)
    """
    return structlog.get_logger(name)


def set_request_context(**kwargs: Any) -> None:
    """
    Set request-scoped context that will be included in all logs.

    Example:
        set_request_context(request_id="123", method="POST", path="/oauth/state")
    """
    ctx = request_context.get()
    if ctx is None:
        ctx = {}
    else:
        ctx = dict(ctx)
    ctx.update(kwargs)
    request_context.set(ctx)


def clear_request_context() -> None:
    """Clear the request context (called at the end of each request)."""
    request_context.set(None)
