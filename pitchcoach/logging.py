from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation ID, echoed back in the X-Request-ID header
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Substrings of event keys whose string values never reach a log line intact
_CREDENTIAL_KEYS = ("password", "secret", "token", "authorization", "cookie", "dsn")
_ADDRESS_KEYS = ("email",)


def mask_email(value: str) -> str:
    """``jane.doe@example.com`` -> ``j***@example.com``; the domain stays readable."""
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _redact_auth_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor hiding credentials and email addresses in structured fields."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if any(part in lower_key for part in _CREDENTIAL_KEYS):
            event_dict[key] = "[redacted]"
        elif any(part in lower_key for part in _ADDRESS_KEYS):
            event_dict[key] = mask_email(value)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_auth_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


# Order matters: DSNs carry passwords and must go before the generic patterns
_ERROR_SCRUBBERS = [
    (re.compile(r"postgres(?:ql)?://\S+", re.IGNORECASE), "[dsn]"),
    (re.compile(r"eyJ[\w-]+\.[\w-]+\.[\w-]*"), "[jwt]"),
    (re.compile(r"(?i)bearer\s+\S+"), "Bearer [redacted]"),
    # psycopg constraint detail: Key (email)=(jane@example.com) already exists
    (re.compile(r"Key \(([^)]*)\)=\([^)]*\)"), r"Key (\1)=([redacted])"),
    (re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+"), "[email]"),
    (re.compile(r"(?i)\b(select|insert|update|delete)\s+.{0,50}"), "[sql]"),
    (re.compile(r"(?i)(password|secret|token)\s*[:=]\s*\S+"), r"\1=[redacted]"),
]

MAX_ERROR_MESSAGE_LENGTH = 300


def sanitize_error_message(error: str) -> str:
    """Scrub DSNs, tokens, addresses and SQL out of exception text before logging."""
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern, replacement in _ERROR_SCRUBBERS:
        result = pattern.sub(replacement, result)

    if len(result) > MAX_ERROR_MESSAGE_LENGTH:
        result = result[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return result
